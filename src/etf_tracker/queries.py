"""Scoped search and sort queries for ETFs, portfolios and users."""

from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy import Select, and_, or_, select

from .database import Etf, Portfolio
from .models.user import User
from .policy import Actor, scope_clause

LIKE_ESCAPE = "\\"


@dataclass(frozen=True)
class SortSpec:
    """Fixed set of sortable columns for one resource."""

    columns: Dict[str, object]
    default: str
    # secondary column ordering rows that tie on the primary key
    then: Dict[str, object] = field(default_factory=dict)

    def key(self, sort_by: Optional[str]) -> str:
        return sort_by if sort_by in self.columns else self.default

    def order(self, sort_by: Optional[str]) -> list:
        key = self.key(sort_by)
        return [self.columns[key]] + ([self.then[key]] if key in self.then else [])


ETF_SORT = SortSpec({"ticker": Etf.ticker, "assetClass": Etf.asset_class}, default="ticker")
PORTFOLIO_SORT = SortSpec({"name": Portfolio.name, "userId": Portfolio.user_id}, default="name")
USER_SORT = SortSpec(
    {"username": User.username, "role": User.role, "id": User.id},
    default="username",
    then={"role": User.username},
)


def normalize_search(search: Optional[str]) -> Optional[str]:
    """Return the trimmed term, or ``None`` when there is nothing to search."""
    if search is None:
        return None
    search = search.strip()
    return search or None


def is_descending(direction: Optional[str]) -> bool:
    return (direction or "").strip().lower() == "desc"


def like_pattern(term: str) -> str:
    """Wrap ``term`` in wildcards, matching LIKE metacharacters literally."""
    escaped = (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
    return f"%{escaped}%"


def _search_clause(term: Optional[str], *columns):
    if term is None:
        return None
    pattern = like_pattern(term)
    return or_(*(column.ilike(pattern, escape=LIKE_ESCAPE) for column in columns))


def _ordered(stmt: Select, sort: SortSpec, model, sort_by, direction) -> Select:
    columns = sort.order(sort_by) + [model.id]
    if is_descending(direction):
        return stmt.order_by(*(column.desc() for column in columns))
    return stmt.order_by(*(column.asc() for column in columns))


def _scoped_select(model, actor: Actor, search_clause) -> Select:
    clauses = [c for c in (scope_clause(model, actor), search_clause) if c is not None]
    stmt = select(model)
    if clauses:
        stmt = stmt.where(and_(*clauses))
    return stmt


def etf_query(
    actor: Actor,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    direction: Optional[str] = None,
) -> Select:
    """Build the listing query for ETFs visible to ``actor``.

    The scope restriction for non-admins is always ANDed with the search
    clause, so no combination of search and sort parameters widens the set
    of rows returned.
    """
    term = normalize_search(search)
    stmt = _scoped_select(Etf, actor, _search_clause(term, Etf.ticker, Etf.description))
    return _ordered(stmt, ETF_SORT, Etf, sort_by, direction)


def portfolio_query(
    actor: Actor,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    direction: Optional[str] = None,
) -> Select:
    """Build the listing query for portfolios visible to ``actor``."""
    term = normalize_search(search)
    stmt = _scoped_select(Portfolio, actor, _search_clause(term, Portfolio.name))
    return _ordered(stmt, PORTFOLIO_SORT, Portfolio, sort_by, direction)


def user_query(
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    direction: Optional[str] = None,
) -> Select:
    """Build the admin listing query for user accounts."""
    stmt = select(User)
    clause = _search_clause(normalize_search(search), User.username)
    if clause is not None:
        stmt = stmt.where(clause)
    return _ordered(stmt, USER_SORT, User, sort_by, direction)
