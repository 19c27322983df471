"""Canonical prediction identifiers.

Every prediction is addressed as ``pred_<version>_<ledger id>``. Only the
current schema version is accepted; anything else is rejected rather than
guessed at.
"""

from __future__ import annotations

import re

SCHEMA_VERSION = "v2"
_PREDICTION_ID = re.compile(r"^pred_(?P<version>v\d+)_(?P<number>[1-9]\d*)$")


def format_prediction_id(ledger_id: int) -> str:
    if isinstance(ledger_id, bool) or not isinstance(ledger_id, int) or ledger_id <= 0:
        raise ValueError(f"ledger id must be a positive integer, got {ledger_id!r}")
    return f"pred_{SCHEMA_VERSION}_{ledger_id}"


def parse_prediction_id(prediction_id: str) -> int:
    """Return the numeric ledger id carried by ``prediction_id``."""

    match = _PREDICTION_ID.match(prediction_id or "")
    if match is None:
        raise ValueError(f"malformed prediction id {prediction_id!r}")
    if match.group("version") != SCHEMA_VERSION:
        raise ValueError(
            f"prediction id {prediction_id!r} uses schema {match.group('version')}, expected {SCHEMA_VERSION}"
        )
    return int(match.group("number"))


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()
