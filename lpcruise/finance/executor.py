"""TransactionExecutor — build, sign, send and confirm with retry/backoff.

Per-request lifecycle:

    PENDING → SIGNING → SENDING → CONFIRMING → CONFIRMED
                 │         │          │
                 └─────────┴──────────┴──▶ FAILED ──▶ RETRYING ──▶ SIGNING
    PENDING / RETRYING ──cancel──▶ CANCELLED

CONFIRMED, CANCELLED and an exhausted FAILED are terminal; terminal requests
leave the table. The executor never touches agent state.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from lpcruise.config import settings
from lpcruise.core.errors import ChainError, InvalidTransition
from lpcruise.core.types import utcnow
from lpcruise.finance.chain import TransactionBuilder, TransactionSender, TransactionSigner
from lpcruise.finance.transactions import (
    AddLiquidity,
    EmergencyExit,
    RemoveLiquidity,
    Swap,
    TransactionPayload,
    TransactionPriority,
    TransactionRequest,
    TransactionResult,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

S = TransactionStatus

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    S.PENDING: frozenset({S.SIGNING, S.CANCELLED}),
    S.SIGNING: frozenset({S.SENDING, S.FAILED}),
    S.SENDING: frozenset({S.CONFIRMING, S.FAILED}),
    S.CONFIRMING: frozenset({S.CONFIRMED, S.FAILED}),
    S.FAILED: frozenset({S.RETRYING}),
    S.RETRYING: frozenset({S.SIGNING, S.CANCELLED}),
    S.CONFIRMED: frozenset(),
    S.CANCELLED: frozenset(),
}


class TransactionExecutor:
    def __init__(
        self,
        builder: TransactionBuilder,
        signer: TransactionSigner,
        sender: TransactionSender,
        retry_delays: Sequence[float] | None = None,
        confirmations: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._builder = builder
        self._signer = signer
        self._sender = sender
        self.retry_delays = list(retry_delays or settings.tx_retry_delays_seconds)
        self.confirmations = confirmations or settings.tx_confirmations
        self._sleep = sleep
        self._requests: dict[str, TransactionRequest] = {}

    # ── table ─────────────────────────────────────────────────────────────────

    def create_request(
        self,
        agent_id: str,
        wallet_id: str,
        payload: TransactionPayload,
        priority: TransactionPriority = TransactionPriority.MEDIUM,
        max_retries: int | None = None,
    ) -> TransactionRequest:
        request = TransactionRequest(
            agent_id=agent_id,
            wallet_id=wallet_id,
            payload=payload,
            priority=priority,
            max_retries=settings.tx_max_retries if max_retries is None else max_retries,
        )
        self._requests[request.id] = request
        logger.debug(
            "[tx %s] Created %s for agent %s (priority %s)",
            request.id, request.type, agent_id, priority.name,
        )
        return request

    def get_request(self, request_id: str) -> TransactionRequest | None:
        return self._requests.get(request_id)

    def get_status(self, request_id: str) -> TransactionStatus | None:
        request = self._requests.get(request_id)
        return request.status if request else None

    def pending_requests(self, agent_id: str | None = None) -> list[TransactionRequest]:
        """Non-terminal requests, highest priority first."""
        requests = [
            r for r in self._requests.values()
            if agent_id is None or r.agent_id == agent_id
        ]
        return sorted(requests, key=lambda r: (-r.priority, r.created_at))

    def cancel(self, request_id: str) -> bool:
        request = self._requests.get(request_id)
        if request is None or request.status not in (S.PENDING, S.RETRYING):
            return False
        self._transition(request, S.CANCELLED)
        self._requests.pop(request_id, None)
        logger.info("[tx %s] Cancelled", request_id)
        return True

    # ── execution ─────────────────────────────────────────────────────────────

    async def submit(
        self,
        agent_id: str,
        wallet_id: str,
        payload: TransactionPayload,
        priority: TransactionPriority = TransactionPriority.MEDIUM,
        max_retries: int | None = None,
    ) -> TransactionResult:
        request = self.create_request(agent_id, wallet_id, payload, priority, max_retries)
        return await self.execute(request.id)

    async def execute(self, request_id: str) -> TransactionResult:
        request = self._requests.get(request_id)
        if request is None:
            return TransactionResult(request_id, False, error="Unknown transaction request")
        if request.status != S.PENDING:
            return TransactionResult(
                request_id, False,
                error=f"Request is {request.status}, not pending",
                retry_count=request.retry_count,
            )

        try:
            return await self._run(request)
        finally:
            # Also reached when the calling task is cancelled mid-flight
            self._requests.pop(request.id, None)

    async def _run(self, request: TransactionRequest) -> TransactionResult:
        while True:
            try:
                tx_hash = await self._attempt(request)
            except InvalidTransition:
                raise
            except Exception as exc:
                request.error = str(exc)
                self._transition(request, S.FAILED)
                logger.warning(
                    "[tx %s] Attempt %d failed: %s",
                    request.id, request.retry_count + 1, exc,
                )
            else:
                request.result = tx_hash
                self._transition(request, S.CONFIRMED)
                logger.info("[tx %s] Confirmed %s (%s)", request.id, tx_hash, request.type)
                return TransactionResult(request.id, True, tx_hash=tx_hash, retry_count=request.retry_count)

            if request.retry_count >= request.max_retries:
                logger.error(
                    "[tx %s] Giving up after %d retries: %s",
                    request.id, request.retry_count, request.error,
                )
                return TransactionResult(
                    request.id, False, error=request.error, retry_count=request.retry_count
                )

            self._transition(request, S.RETRYING)
            delay = self.retry_delays[min(request.retry_count, len(self.retry_delays) - 1)]
            logger.info("[tx %s] Retrying in %ss", request.id, delay)
            await self._sleep(delay)

            if request.status == S.CANCELLED:
                return TransactionResult(
                    request.id, False, error="Cancelled while waiting to retry",
                    retry_count=request.retry_count,
                )
            request.retry_count += 1

    async def _attempt(self, request: TransactionRequest) -> str:
        self._transition(request, S.SIGNING)
        unsigned = await self._build(request)
        signed = await self._signer.sign(unsigned, request.wallet_id)

        self._transition(request, S.SENDING)
        tx_hash = await self._sender.send(signed)

        self._transition(request, S.CONFIRMING)
        if not await self._sender.confirm(tx_hash, self.confirmations):
            raise ChainError(f"Transaction {tx_hash} failed on-chain")
        return tx_hash

    async def _build(self, request: TransactionRequest):
        payload = request.payload
        if isinstance(payload, AddLiquidity):
            return await self._builder.build_add_liquidity(request.wallet_id, payload)
        if isinstance(payload, RemoveLiquidity):
            return await self._builder.build_remove_liquidity(request.wallet_id, payload)
        if isinstance(payload, Swap):
            return await self._builder.build_swap(request.wallet_id, payload)
        if isinstance(payload, EmergencyExit):
            return await self._builder.build_emergency_exit(request.wallet_id, payload)
        raise ValueError(f"Unsupported payload {type(payload).__name__}")

    def _transition(self, request: TransactionRequest, target: TransactionStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[request.status]:
            raise InvalidTransition(f"[tx {request.id}] {request.status} → {target} not allowed")
        request.status = target
        request.updated_at = utcnow()
