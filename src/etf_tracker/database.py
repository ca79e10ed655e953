"""Database setup for ETFs, portfolios and their memberships."""

import logging
from typing import NoReturn

from fastapi import HTTPException
from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    options = {"connect_args": {"check_same_thread": False}}
    # An in-memory database only lives as long as its single connection
    if url in ("sqlite://", "sqlite:///:memory:"):
        options["poolclass"] = StaticPool
    return options


engine = create_engine(settings.database_url, future=True, **_engine_options(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()

# Largest value a 64-bit INTEGER primary key can hold
MAX_ID = 2**63 - 1


def valid_id(value: int) -> bool:
    """Return whether ``value`` can name a stored row."""
    return 0 < value <= MAX_ID


class Etf(Base):
    """An exchange-traded fund tracked by a user."""

    __tablename__ = "etf"

    id = Column(Integer, primary_key=True, index=True)
    ticker = Column(String(20), nullable=False, index=True)
    description = Column(String(255))
    asset_class = Column(String(100))
    expense_ratio = Column(Numeric(6, 4))
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    is_public = Column(Boolean, default=False, nullable=False)


class Portfolio(Base):
    """A named, user-curated collection of ETFs."""

    __tablename__ = "portfolio"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    is_public = Column(Boolean, default=False, nullable=False)


class PortfolioEtf(Base):
    """Membership of an ETF in a portfolio."""

    __tablename__ = "portfolio_etf"
    __table_args__ = (UniqueConstraint("portfolio_id", "etf_id", name="uq_portfolio_etf"),)

    id = Column(Integer, primary_key=True, index=True)
    portfolio_id = Column(Integer, ForeignKey("portfolio.id", ondelete="CASCADE"), nullable=False, index=True)
    etf_id = Column(Integer, ForeignKey("etf.id", ondelete="CASCADE"), nullable=False, index=True)


def handle_store_error(session: Session, exc: Exception) -> NoReturn:
    """Rollback the transaction and raise an HTTP error for a failed write."""
    session.rollback()
    if isinstance(exc, HTTPException):
        raise exc
    logger.exception("store error", exc_info=exc)
    if isinstance(exc, SQLAlchemyError):
        raise HTTPException(status_code=500, detail="Database error") from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def init_db() -> None:
    """Create database tables if they do not exist."""
    # users table lives in models.user and must be registered on Base first
    from .models import user  # noqa: F401

    Base.metadata.create_all(bind=engine)
