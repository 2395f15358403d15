"""Chain-facing ports.

Everything that touches the network goes through one of these. Adapters
raise ChainError on any RPC/HTTP failure; callers decide whether to retry.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Sequence

from lpcruise.core.types import Position
from lpcruise.finance.transactions import AddLiquidity, EmergencyExit, RemoveLiquidity, Swap

# Opaque blobs: whatever the builder emits is what the signer accepts, and
# the signer's output is what the sender broadcasts.
UnsignedTx = Any
SignedTx = Any


class ChainClient(ABC):
    """Read-only wallet queries."""

    @abstractmethod
    async def get_balance(self, wallet_id: str) -> Decimal:
        """Native balance available to the wallet (not locked in positions)."""
        ...

    @abstractmethod
    async def get_positions(self, wallet_id: str) -> Sequence[Position]:
        ...


class TransactionBuilder(ABC):
    """Turns a payload into an unsigned transaction. One method per type."""

    @abstractmethod
    async def build_add_liquidity(self, wallet_id: str, payload: AddLiquidity) -> UnsignedTx:
        ...

    @abstractmethod
    async def build_remove_liquidity(self, wallet_id: str, payload: RemoveLiquidity) -> UnsignedTx:
        ...

    @abstractmethod
    async def build_swap(self, wallet_id: str, payload: Swap) -> UnsignedTx:
        ...

    @abstractmethod
    async def build_emergency_exit(self, wallet_id: str, payload: EmergencyExit) -> UnsignedTx:
        ...


class TransactionSigner(ABC):
    @abstractmethod
    async def sign(self, unsigned: UnsignedTx, wallet_id: str) -> SignedTx:
        ...


class TransactionSender(ABC):
    @abstractmethod
    async def send(self, signed: SignedTx) -> str:
        """Broadcast and return the transaction signature/hash."""
        ...

    @abstractmethod
    async def confirm(self, signature: str, confirmations: int) -> bool:
        """Wait for ``confirmations``; False if the transaction failed on-chain."""
        ...
