"""Persistence of user accounts and their password hashes."""

import logging
from typing import List, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from .database import Etf, Portfolio, PortfolioEtf, handle_store_error, valid_id
from .models.user import Role, User
from .queries import user_query

logger = logging.getLogger(__name__)


def get_user(session: Session, user_id: int) -> Optional[User]:
    if not valid_id(user_id):
        return None
    return session.get(User, user_id)


def get_user_by_username(session: Session, username: str) -> Optional[User]:
    return session.execute(select(User).where(User.username == username)).scalar_one_or_none()


def username_exists(session: Session, username: str, exclude_id: Optional[int] = None) -> bool:
    """Return whether another account already uses ``username``."""
    stmt = select(func.count()).select_from(User).where(User.username == username)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return session.execute(stmt).scalar_one() > 0


def list_users(
    session: Session,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    direction: Optional[str] = None,
) -> List[User]:
    return list(session.execute(user_query(search, sort_by, direction)).scalars())


def create_user(session: Session, username: str, password_hash: str, role: Role = Role.USER) -> User:
    """Insert a new account; the caller has already checked the username."""
    logger.info("create user username=%s role=%s", username, role.value)
    try:
        user = User(username=username, password_hash=password_hash, role=role.value)
        session.add(user)
        session.commit()
        session.refresh(user)
        logger.info("created user id=%s", user.id)
        return user
    except Exception as exc:
        handle_store_error(session, exc)


def update_user(session: Session, user: User, username: str, role: Role) -> User:
    """Update the profile fields of ``user``; the password is left alone."""
    logger.info("update user id=%s username=%s role=%s", user.id, username, role.value)
    try:
        user.username = username
        user.role = role.value
        session.commit()
        session.refresh(user)
        return user
    except Exception as exc:
        handle_store_error(session, exc)


def set_password_hash(session: Session, user_id: int, password_hash: str) -> None:
    logger.info("set password user id=%s", user_id)
    try:
        user = session.get(User, user_id)
        user.password_hash = password_hash
        session.commit()
    except Exception as exc:
        handle_store_error(session, exc)


def delete_user(session: Session, user: User) -> None:
    """Delete ``user`` together with the ETFs and portfolios they own."""
    logger.info("delete user id=%s", user.id)
    try:
        etf_ids = select(Etf.id).where(Etf.user_id == user.id)
        portfolio_ids = select(Portfolio.id).where(Portfolio.user_id == user.id)
        session.execute(
            delete(PortfolioEtf).where(
                or_(PortfolioEtf.etf_id.in_(etf_ids), PortfolioEtf.portfolio_id.in_(portfolio_ids))
            )
        )
        session.execute(delete(Etf).where(Etf.user_id == user.id))
        session.execute(delete(Portfolio).where(Portfolio.user_id == user.id))
        session.delete(user)
        session.commit()
    except Exception as exc:
        handle_store_error(session, exc)


def ensure_admin(session: Session, username: str, password_hash: str) -> User:
    """Create the bootstrap admin account unless the username is taken."""
    existing = get_user_by_username(session, username)
    if existing is not None:
        return existing
    logger.info("bootstrapping admin account %s", username)
    return create_user(session, username, password_hash, Role.ADMIN)
