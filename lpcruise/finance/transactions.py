"""Transaction request model: payload variants, statuses and results."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import IntEnum, StrEnum
from typing import Any, ClassVar, Union

from lpcruise.core.types import utcnow


class TransactionType(StrEnum):
    ADD_LIQUIDITY = "add_liquidity"
    REMOVE_LIQUIDITY = "remove_liquidity"
    SWAP = "swap"
    EMERGENCY_EXIT = "emergency_exit"


class TransactionStatus(StrEnum):
    PENDING = "pending"
    SIGNING = "signing"
    SENDING = "sending"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


class TransactionPriority(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3


# ── Payloads ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TargetBin:
    bin_id: int
    percentage: float


@dataclass(frozen=True)
class AddLiquidity:
    type: ClassVar[TransactionType] = TransactionType.ADD_LIQUIDITY

    pool_id: str
    amount: Decimal
    target_bins: tuple[TargetBin, ...] = ()


@dataclass(frozen=True)
class RemoveLiquidity:
    type: ClassVar[TransactionType] = TransactionType.REMOVE_LIQUIDITY

    pool_id: str
    amount: Decimal
    # Inclusive (lower, upper) bin ids; None means the whole position
    bin_range: tuple[int, int] | None = None


@dataclass(frozen=True)
class Swap:
    type: ClassVar[TransactionType] = TransactionType.SWAP

    from_token: str
    to_token: str
    amount: Decimal
    slippage: float = 0.01


@dataclass(frozen=True)
class EmergencyExit:
    type: ClassVar[TransactionType] = TransactionType.EMERGENCY_EXIT

    pool_ids: tuple[str, ...]


TransactionPayload = Union[AddLiquidity, RemoveLiquidity, Swap, EmergencyExit]


# ── Requests & results ────────────────────────────────────────────────────────


@dataclass
class TransactionRequest:
    agent_id: str
    wallet_id: str
    payload: TransactionPayload
    priority: TransactionPriority = TransactionPriority.MEDIUM
    max_retries: int = 3
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: TransactionStatus = TransactionStatus.PENDING
    retry_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    result: Any = None
    error: str | None = None

    @property
    def type(self) -> TransactionType:
        return self.payload.type


@dataclass(frozen=True)
class TransactionResult:
    request_id: str
    success: bool
    tx_hash: str | None = None
    error: str | None = None
    retry_count: int = 0
