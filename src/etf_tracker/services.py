"""Service layer for ETFs, portfolios and portfolio membership."""

import logging
from typing import Dict, List, Optional

from fastapi import HTTPException
from prometheus_client import Counter
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import Etf, Portfolio, PortfolioEtf, handle_store_error, valid_id
from .policy import Actor, scope_clause
from .queries import etf_query, portfolio_query

logger = logging.getLogger(__name__)

ETF_FIELDS = ("ticker", "description", "asset_class", "expense_ratio", "is_public")
PORTFOLIO_FIELDS = ("name", "is_public")

# Prometheus counters for key store events
ETF_COUNTER = Counter("etfs_created_total", "Total ETFs created")
PORTFOLIO_COUNTER = Counter("portfolios_created_total", "Total portfolios created")
MEMBERSHIP_COUNTER = Counter("portfolio_etfs_added_total", "Total ETFs added to portfolios")


def _mutable(changes: Dict[str, object], fields) -> Dict[str, object]:
    return {key: value for key, value in changes.items() if key in fields}


def get_etf(session: Session, etf_id: int) -> Optional[Etf]:
    if not valid_id(etf_id):
        return None
    return session.get(Etf, etf_id)


def list_etfs(
    session: Session,
    actor: Actor,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    direction: Optional[str] = None,
) -> List[Etf]:
    """Return the ETFs in ``actor``'s scope matching the search term."""
    return list(session.execute(etf_query(actor, search, sort_by, direction)).scalars())


def create_etf(session: Session, owner_id: int, fields: Dict[str, object]) -> Etf:
    """Insert a new ETF owned by ``owner_id``.

    Any ``id`` or ``user_id`` in ``fields`` is ignored; the row always gets a
    fresh id and the given owner.
    """
    logger.info("create etf owner=%s ticker=%s", owner_id, fields.get("ticker"))
    try:
        etf = Etf(user_id=owner_id, **_mutable(fields, ETF_FIELDS))
        session.add(etf)
        session.commit()
        session.refresh(etf)
        ETF_COUNTER.inc()
        logger.info("created etf id=%s owner=%s", etf.id, owner_id)
        return etf
    except Exception as exc:
        handle_store_error(session, exc)


def update_etf(session: Session, etf: Etf, changes: Dict[str, object]) -> Etf:
    """Apply the mutable fields of ``changes``; id and owner never change."""
    logger.info("update etf id=%s", etf.id)
    try:
        for key, value in _mutable(changes, ETF_FIELDS).items():
            setattr(etf, key, value)
        session.commit()
        session.refresh(etf)
        return etf
    except Exception as exc:
        handle_store_error(session, exc)


def delete_etf(session: Session, etf: Etf) -> None:
    """Delete an ETF and drop it from every portfolio that holds it."""
    logger.info("delete etf id=%s", etf.id)
    try:
        session.execute(delete(PortfolioEtf).where(PortfolioEtf.etf_id == etf.id))
        session.delete(etf)
        session.commit()
    except Exception as exc:
        handle_store_error(session, exc)


def get_portfolio(session: Session, portfolio_id: int) -> Optional[Portfolio]:
    if not valid_id(portfolio_id):
        return None
    return session.get(Portfolio, portfolio_id)


def list_portfolios(
    session: Session,
    actor: Actor,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    direction: Optional[str] = None,
) -> List[Portfolio]:
    """Return the portfolios in ``actor``'s scope matching the search term."""
    return list(session.execute(portfolio_query(actor, search, sort_by, direction)).scalars())


def create_portfolio(session: Session, owner_id: int, fields: Dict[str, object]) -> Portfolio:
    logger.info("create portfolio owner=%s name=%s", owner_id, fields.get("name"))
    try:
        portfolio = Portfolio(user_id=owner_id, **_mutable(fields, PORTFOLIO_FIELDS))
        session.add(portfolio)
        session.commit()
        session.refresh(portfolio)
        PORTFOLIO_COUNTER.inc()
        logger.info("created portfolio id=%s owner=%s", portfolio.id, owner_id)
        return portfolio
    except Exception as exc:
        handle_store_error(session, exc)


def update_portfolio(session: Session, portfolio: Portfolio, changes: Dict[str, object]) -> Portfolio:
    logger.info("update portfolio id=%s", portfolio.id)
    try:
        for key, value in _mutable(changes, PORTFOLIO_FIELDS).items():
            setattr(portfolio, key, value)
        session.commit()
        session.refresh(portfolio)
        return portfolio
    except Exception as exc:
        handle_store_error(session, exc)


def delete_portfolio(session: Session, portfolio: Portfolio) -> None:
    """Delete a portfolio and its memberships, keeping the ETFs themselves."""
    logger.info("delete portfolio id=%s", portfolio.id)
    try:
        session.execute(delete(PortfolioEtf).where(PortfolioEtf.portfolio_id == portfolio.id))
        session.delete(portfolio)
        session.commit()
    except Exception as exc:
        handle_store_error(session, exc)


def membership_exists(session: Session, portfolio_id: int, etf_id: int) -> bool:
    stmt = select(PortfolioEtf.id).where(
        PortfolioEtf.portfolio_id == portfolio_id, PortfolioEtf.etf_id == etf_id
    )
    return session.execute(stmt).first() is not None


def list_portfolio_etfs(session: Session, actor: Actor, portfolio_id: int) -> List[Etf]:
    """Return the ETFs held by a portfolio that ``actor`` is allowed to see."""
    stmt = (
        select(Etf)
        .join(PortfolioEtf, PortfolioEtf.etf_id == Etf.id)
        .where(PortfolioEtf.portfolio_id == portfolio_id)
    )
    clause = scope_clause(Etf, actor)
    if clause is not None:
        stmt = stmt.where(clause)
    return list(session.execute(stmt.order_by(Etf.ticker, Etf.id)).scalars())


def add_etf_to_portfolio(session: Session, portfolio_id: int, etf_id: int) -> PortfolioEtf:
    """Record that a portfolio holds an ETF; a pair may only be added once."""
    logger.info("add etf=%s to portfolio=%s", etf_id, portfolio_id)
    try:
        if membership_exists(session, portfolio_id, etf_id):
            raise HTTPException(status_code=409, detail="ETF already in portfolio")
        membership = PortfolioEtf(portfolio_id=portfolio_id, etf_id=etf_id)
        session.add(membership)
        session.commit()
        session.refresh(membership)
        MEMBERSHIP_COUNTER.inc()
        return membership
    except IntegrityError as exc:
        session.rollback()
        raise HTTPException(status_code=409, detail="ETF already in portfolio") from exc
    except Exception as exc:
        handle_store_error(session, exc)


def remove_etf_from_portfolio(session: Session, portfolio_id: int, etf_id: int) -> None:
    """Remove a membership; removing a pair that is not there does nothing."""
    logger.info("remove etf=%s from portfolio=%s", etf_id, portfolio_id)
    if not valid_id(etf_id):
        return
    try:
        session.execute(
            delete(PortfolioEtf).where(
                PortfolioEtf.portfolio_id == portfolio_id, PortfolioEtf.etf_id == etf_id
            )
        )
        session.commit()
    except Exception as exc:
        handle_store_error(session, exc)
