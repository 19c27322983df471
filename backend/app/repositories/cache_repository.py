"""Key/value data access for the read-side cache."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import CacheEntry


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class CacheRepository:
    """Encapsulate cache entry persistence.

    Writes are whole-value overwrites ordered by the ledger read that produced
    them: an entry is only replaced by a value observed at the same or a later
    ``(observed_block, observed_at)``.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def put(
        self,
        key: str,
        value: dict[str, Any] | list[Any],
        *,
        observed_block: int,
        observed_at: datetime,
    ) -> bool:
        observed_at = _as_utc(observed_at)
        existing = self._session.get(CacheEntry, key, with_for_update=True)
        if existing is None:
            self._session.add(
                CacheEntry(
                    key=key,
                    value=value,
                    observed_block=observed_block,
                    observed_at=observed_at,
                )
            )
            return True

        stored_order = (existing.observed_block, _as_utc(existing.observed_at))
        if stored_order > (observed_block, observed_at):
            return False

        existing.value = value
        existing.observed_block = observed_block
        existing.observed_at = observed_at
        return True

    # ------------------------------------------------------------------
    # Queries

    def get(self, key: str) -> dict[str, Any] | list[Any] | None:
        entry = self._session.get(CacheEntry, key)
        return entry.value if entry is not None else None

    def list_by_prefix(self, prefix: str) -> list[dict[str, Any] | list[Any]]:
        query = (
            select(CacheEntry.value)
            .where(CacheEntry.key.startswith(prefix, autoescape=True))
            .order_by(CacheEntry.key)
        )
        return list(self._session.execute(query).scalars().all())
