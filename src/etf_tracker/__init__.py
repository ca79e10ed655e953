"""ETF and portfolio tracking backend."""

from .api import app

__all__ = ["app"]
