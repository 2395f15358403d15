"""Network adapters for the chain ports.

  RpcChainClient         Solana getBalance + positions indexer
  HttpTransactionBuilder remote builder service, one endpoint per type
  RemoteSigner           custody service holding the wallet keys
  RpcTransactionSender   Solana sendRawTransaction / getSignatureStatuses

Wallet ids are the wallet's public address. Solana RPC goes through
``solana.rpc.async_api.AsyncClient``; the indexer, builder and signer are
plain HTTP services on httpx. Every adapter takes its client as an optional
argument so tests can hand in a fake or an ``httpx.MockTransport``.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from decimal import Decimal
from typing import Any, Sequence

import httpx
from pydantic import TypeAdapter
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from lpcruise.config import settings
from lpcruise.core.errors import ChainError
from lpcruise.core.types import Position
from lpcruise.finance.chain import (
    ChainClient,
    SignedTx,
    TransactionBuilder,
    TransactionSender,
    TransactionSigner,
    UnsignedTx,
)
from lpcruise.finance.transactions import (
    AddLiquidity,
    EmergencyExit,
    RemoveLiquidity,
    Swap,
    TransactionPayload,
)

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

_payload_adapter = TypeAdapter(TransactionPayload)


class _HttpAdapter:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(self, url: str) -> Any:
        try:
            resp = await self._http().get(url)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ChainError(f"GET {url} failed: {exc}") from exc

    async def _post(self, url: str, body: dict) -> Any:
        try:
            resp = await self._http().post(url, json=body)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ChainError(f"POST {url} failed: {exc}") from exc


# solana-py raises its own types for transport and RPC errors; solders raises
# ValueError on malformed keys and signatures
_RPC_ERRORS = (SolanaRpcException, RPCException, httpx.HTTPError, ValueError)


class _SolanaRpc:
    """Lazily opened ``AsyncClient`` shared by one adapter."""

    def __init__(self, rpc_url: str | None = None, client: AsyncClient | None = None) -> None:
        self.rpc_url = rpc_url or settings.rpc_url
        self._client = client
        self._owns_client = client is None

    def client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, timeout=settings.http_timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.close()
            self._client = None


# ── Reads ─────────────────────────────────────────────────────────────────────


class RpcChainClient(_HttpAdapter, ChainClient):
    def __init__(
        self,
        rpc_url: str | None = None,
        positions_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        solana: AsyncClient | None = None,
    ) -> None:
        super().__init__(client)
        self._rpc = _SolanaRpc(rpc_url, solana)
        self.positions_url = (positions_url or settings.positions_api_url).rstrip("/")

    async def close(self) -> None:
        await self._rpc.close()
        await super().close()

    async def get_balance(self, wallet_id: str) -> Decimal:
        try:
            resp = await self._rpc.client().get_balance(Pubkey.from_string(wallet_id), commitment=Confirmed)
        except _RPC_ERRORS as exc:
            raise ChainError(f"getBalance failed for {wallet_id}: {exc}") from exc
        return Decimal(resp.value) / Decimal(LAMPORTS_PER_SOL)

    async def get_positions(self, wallet_id: str) -> Sequence[Position]:
        data = await self._get(f"{self.positions_url}/{wallet_id}")
        rows = data.get("positions", []) if isinstance(data, dict) else data
        positions = []
        for row in rows:
            try:
                positions.append(
                    Position(
                        pool_id=row["pool_id"],
                        value_native=Decimal(str(row.get("value_native", 0))),
                        value_usd=Decimal(str(row.get("value_usd", 0))),
                    )
                )
            except (KeyError, ArithmeticError) as exc:
                logger.warning("Skipping malformed position for %s: %s", wallet_id, exc)
        return positions


# ── Build / sign / send ───────────────────────────────────────────────────────


class HttpTransactionBuilder(_HttpAdapter, TransactionBuilder):
    def __init__(self, builder_url: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(client)
        self.builder_url = (builder_url or settings.builder_url).rstrip("/")

    async def _build(self, wallet_id: str, payload: TransactionPayload) -> UnsignedTx:
        body = {
            "wallet_id": wallet_id,
            "payload": _payload_adapter.dump_python(payload, mode="json"),
        }
        data = await self._post(f"{self.builder_url}/{payload.type}", body)
        try:
            return data["transaction"]
        except (KeyError, TypeError) as exc:
            raise ChainError(f"builder returned no transaction for {payload.type}") from exc

    async def build_add_liquidity(self, wallet_id: str, payload: AddLiquidity) -> UnsignedTx:
        return await self._build(wallet_id, payload)

    async def build_remove_liquidity(self, wallet_id: str, payload: RemoveLiquidity) -> UnsignedTx:
        return await self._build(wallet_id, payload)

    async def build_swap(self, wallet_id: str, payload: Swap) -> UnsignedTx:
        return await self._build(wallet_id, payload)

    async def build_emergency_exit(self, wallet_id: str, payload: EmergencyExit) -> UnsignedTx:
        return await self._build(wallet_id, payload)


class RemoteSigner(_HttpAdapter, TransactionSigner):
    def __init__(self, signer_url: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(client)
        self.signer_url = signer_url or settings.signer_url

    async def sign(self, unsigned: UnsignedTx, wallet_id: str) -> SignedTx:
        data = await self._post(self.signer_url, {"wallet_id": wallet_id, "transaction": unsigned})
        try:
            return data["signed_transaction"]
        except (KeyError, TypeError) as exc:
            raise ChainError(f"signer returned nothing for wallet {wallet_id}") from exc


class RpcTransactionSender(TransactionSender):
    def __init__(
        self,
        rpc_url: str | None = None,
        solana: AsyncClient | None = None,
        poll_interval: float = 2.0,
        max_polls: int = 30,
    ) -> None:
        self._rpc = _SolanaRpc(rpc_url, solana)
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    async def close(self) -> None:
        await self._rpc.close()

    async def send(self, signed: SignedTx) -> str:
        try:
            raw = base64.b64decode(signed, validate=True)
        except binascii.Error as exc:
            raise ChainError(f"signed transaction is not base64: {exc}") from exc
        try:
            resp = await self._rpc.client().send_raw_transaction(
                raw, opts=TxOpts(preflight_commitment=Confirmed)
            )
        except _RPC_ERRORS as exc:
            raise ChainError(f"sendTransaction failed: {exc}") from exc
        if resp.value is None:
            raise ChainError("sendTransaction returned no signature")
        signature = str(resp.value)
        logger.info("Broadcast %s", signature)
        return signature

    async def confirm(self, signature: str, confirmations: int) -> bool:
        try:
            sig = Signature.from_string(signature)
        except ValueError as exc:
            raise ChainError(f"invalid signature {signature!r}") from exc

        for _ in range(self.max_polls):
            try:
                resp = await self._rpc.client().get_signature_statuses(
                    [sig], search_transaction_history=True
                )
            except _RPC_ERRORS as exc:
                raise ChainError(f"getSignatureStatuses failed for {signature}: {exc}") from exc
            status = resp.value[0] if resp.value else None
            if status is not None:
                if status.err is not None:
                    logger.warning("Transaction %s failed on-chain: %s", signature, status.err)
                    return False
                # confirmations is None once the slot is rooted
                if status.confirmation_status == TransactionConfirmationStatus.Finalized:
                    return True
                if (status.confirmations or 0) >= confirmations:
                    return True
            await asyncio.sleep(self.poll_interval)
        raise ChainError(f"{signature} not confirmed after {self.max_polls} polls")
