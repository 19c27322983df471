"""Ledger gateway client and payload normalization."""

from .client import LedgerClient

__all__ = ["LedgerClient"]
