from __future__ import annotations

from typing import Any

from app.domain import (
    ApprovalStatus,
    PoolTotals,
    PredictionSnapshot,
    ResolutionStatus,
    StakeSnapshot,
    Token,
    format_prediction_id,
    normalize_address,
)

_POOL_FIELDS: dict[Token, tuple[str, str]] = {
    Token.ETH: ("yesTotalAmount", "noTotalAmount"),
    Token.SWIPE: ("swipeYesTotalAmount", "swipeNoTotalAmount"),
}


def _as_int(value: Any) -> int:
    """Decode ledger integers, which the gateway may send as decimal or hex strings."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    raise ValueError(f"cannot decode ledger integer from {value!r}")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)


def observed_block(payload: dict[str, Any]) -> int:
    return _as_int(payload.get("blockNumber") or payload.get("observedBlock"))


def _resolution(raw: dict[str, Any]) -> tuple[ResolutionStatus, bool | None, str | None]:
    if _as_bool(raw.get("cancelled")):
        return ResolutionStatus.CANCELLED, None, raw.get("cancelReason") or None
    if _as_bool(raw.get("resolved")):
        return ResolutionStatus.RESOLVED, _as_bool(raw.get("outcome")), None
    return ResolutionStatus.OPEN, None, None


def _approval(raw: dict[str, Any]) -> ApprovalStatus:
    if _as_bool(raw.get("rejected")):
        return ApprovalStatus.REJECTED
    if _as_bool(raw.get("needsApproval")) and not _as_bool(raw.get("approved")):
        return ApprovalStatus.PENDING_APPROVAL
    return ApprovalStatus.APPROVED


def normalize_prediction(ledger_id: int, raw: dict[str, Any]) -> PredictionSnapshot | None:
    """Build a snapshot from a gateway payload; ``None`` for uninitialised slots."""

    deadline = _as_int(raw.get("deadline"))
    if deadline <= 0:
        return None

    pools = {
        token: PoolTotals(yes_total=_as_int(raw.get(yes_key)), no_total=_as_int(raw.get(no_key)))
        for token, (yes_key, no_key) in _POOL_FIELDS.items()
    }
    resolution, outcome, cancel_reason = _resolution(raw)
    participants = sorted(
        {normalize_address(str(address)) for address in raw.get("participants") or [] if address}
    )

    return PredictionSnapshot(
        prediction_id=format_prediction_id(ledger_id),
        question=str(raw.get("question") or ""),
        description=raw.get("description") or None,
        category=str(raw.get("category") or ""),
        creator=normalize_address(str(raw.get("creator") or "")),
        deadline=deadline,
        created_at=_as_int(raw.get("createdAt")),
        pools=pools,
        resolution=resolution,
        outcome=outcome,
        cancel_reason=cancel_reason,
        approval=_approval(raw),
        participants=participants,
        observed_block=observed_block(raw),
    )


def normalize_stakes(
    prediction_id: str, user_address: str, raw: dict[str, Any]
) -> dict[Token, StakeSnapshot]:
    block = observed_block(raw)
    stakes: dict[Token, StakeSnapshot] = {}
    for token in Token:
        entry = raw.get(token.value) or {}
        stakes[token] = StakeSnapshot(
            prediction_id=prediction_id,
            user_address=normalize_address(user_address),
            token=token,
            yes_amount=_as_int(entry.get("yesAmount")),
            no_amount=_as_int(entry.get("noAmount")),
            claimed=_as_bool(entry.get("claimed")),
            observed_block=block,
        )
    return stakes
