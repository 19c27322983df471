from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from app.core.config import Settings, get_settings
from app.domain import (
    ConfirmationStatus,
    LedgerConfirmationTimeout,
    LedgerReadError,
    LedgerSubmissionError,
    OperationKind,
    PredictionSnapshot,
    Side,
    StakeSnapshot,
    SubmissionAbandoned,
    Token,
    format_prediction_id,
    normalize_address,
    parse_prediction_id,
)

from .normalize import normalize_prediction, normalize_stakes

_CONFIRMED_STATUSES = {"success", "confirmed", "1"}
_FAILED_STATUSES = {"failed", "reverted", "0"}
# Normalisation faults in a gateway payload; surfaced as read errors.
_MALFORMED = (ValueError, TypeError, KeyError)


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {"data": payload}


class LedgerClient:
    """Async façade over the ledger gateway.

    Submissions go through the signing service and are never retried here: a
    failed financial write must be re-initiated by the user. Reads are safe
    for any number of concurrent callers.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        confirmation_timeout: float | None = None,
        poll_interval: float | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.base_url = base_url or str(settings.ledger_base_url)
        self.timeout = timeout if timeout is not None else settings.ledger_timeout_seconds
        self.confirmation_timeout = (
            confirmation_timeout
            if confirmation_timeout is not None
            else settings.confirmation_timeout_seconds
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.confirmation_poll_interval_seconds
        )
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=transport)

    # ------------------------------------------------------------------
    # Writes

    async def _submit(self, kind: OperationKind, payload: dict[str, Any]) -> str:
        path = f"/transactions/{kind.value}"
        logger.info("Ledger POST {} payload={}", path, payload)
        try:
            response = await self.client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            raise SubmissionAbandoned(
                f"{kind.value} submission timed out before a transaction id was issued"
            ) from exc
        except httpx.HTTPError as exc:
            raise LedgerSubmissionError(f"{kind.value} submission failed: {exc}") from exc

        body = _json_or_empty(response)
        transaction_id = body.get("transactionId") or body.get("txHash")
        if response.is_error:
            message = body.get("error") or response.text or f"HTTP {response.status_code}"
            if body.get("abandoned"):
                raise SubmissionAbandoned(f"{kind.value} submission abandoned: {message}")
            raise LedgerSubmissionError(
                f"{kind.value} submission rejected: {message}",
                transaction_id=str(transaction_id) if transaction_id else None,
            )
        if not transaction_id:
            raise SubmissionAbandoned(f"{kind.value} submission returned no transaction id")
        return str(transaction_id)

    async def submit_stake(
        self, prediction_id: str, user_address: str, side: Side, token: Token, amount: int
    ) -> str:
        return await self._submit(
            OperationKind.STAKE,
            {
                "predictionId": parse_prediction_id(prediction_id),
                "userAddress": normalize_address(user_address),
                "isYes": side is Side.YES,
                "token": token.value,
                "amount": str(amount),
            },
        )

    async def submit_resolve(self, prediction_id: str, outcome: bool, user_address: str) -> str:
        return await self._submit(
            OperationKind.RESOLVE,
            {
                "predictionId": parse_prediction_id(prediction_id),
                "userAddress": normalize_address(user_address),
                "outcome": outcome,
            },
        )

    async def submit_cancel(self, prediction_id: str, reason: str, user_address: str) -> str:
        return await self._submit(
            OperationKind.CANCEL,
            {
                "predictionId": parse_prediction_id(prediction_id),
                "userAddress": normalize_address(user_address),
                "reason": reason,
            },
        )

    async def submit_approve(self, prediction_id: str, user_address: str) -> str:
        return await self._submit(
            OperationKind.APPROVE,
            {
                "predictionId": parse_prediction_id(prediction_id),
                "userAddress": normalize_address(user_address),
            },
        )

    async def submit_claim(self, prediction_id: str, token: Token, user_address: str) -> str:
        return await self._submit(
            OperationKind.CLAIM,
            {
                "predictionId": parse_prediction_id(prediction_id),
                "userAddress": normalize_address(user_address),
                "token": token.value,
            },
        )

    async def wait_for_confirmation(
        self, transaction_id: str, *, timeout: float | None = None
    ) -> ConfirmationStatus:
        """Poll the receipt until it is mined; raise once the bounded wait elapses."""

        timeout = self.confirmation_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                receipt = await self._get_json(f"/transactions/{transaction_id}/receipt")
            except LedgerReadError as exc:
                logger.warning("Receipt poll for {} failed: {}", transaction_id, exc)
                receipt = {}

            status = str(receipt.get("status") or "pending").lower()
            if status in _CONFIRMED_STATUSES:
                return ConfirmationStatus.CONFIRMED
            if status in _FAILED_STATUSES:
                return ConfirmationStatus.FAILED

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise LedgerConfirmationTimeout(transaction_id, timeout)
            await asyncio.sleep(min(self.poll_interval, remaining))

    # ------------------------------------------------------------------
    # Reads

    async def _get_json(self, path: str) -> dict[str, Any]:
        try:
            response = await self.client.get(path)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LedgerReadError(f"GET {path} failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise LedgerReadError(f"GET {path} returned malformed JSON") from exc
        if isinstance(payload, list):
            return {"data": payload}
        if not isinstance(payload, dict):
            raise LedgerReadError(f"GET {path} returned unexpected payload {type(payload).__name__}")
        return payload

    async def read_prediction(self, prediction_id: str) -> PredictionSnapshot:
        ledger_id = parse_prediction_id(prediction_id)
        payload = await self._get_json(f"/predictions/{ledger_id}")
        try:
            snapshot = normalize_prediction(ledger_id, payload)
        except _MALFORMED as exc:
            raise LedgerReadError(f"prediction {prediction_id} has a malformed ledger record: {exc}") from exc
        if snapshot is None:
            raise LedgerReadError(f"prediction {prediction_id} is not initialised on the ledger")
        return snapshot

    async def read_stake(self, prediction_id: str, user_address: str) -> dict[Token, StakeSnapshot]:
        ledger_id = parse_prediction_id(prediction_id)
        address = normalize_address(user_address)
        payload = await self._get_json(f"/predictions/{ledger_id}/stakes/{address}")
        try:
            return normalize_stakes(prediction_id, address, payload)
        except _MALFORMED as exc:
            raise LedgerReadError(
                f"stakes of {address} on {prediction_id} have a malformed ledger record: {exc}"
            ) from exc

    async def list_active_prediction_ids(self) -> list[str]:
        payload = await self._get_json("/predictions/active")
        raw_ids = payload.get("ids")
        if raw_ids is None:
            raw_ids = payload.get("data") or []
        try:
            return [format_prediction_id(int(value)) for value in raw_ids]
        except _MALFORMED as exc:
            raise LedgerReadError(f"active prediction list is malformed: {exc}") from exc

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
