"""FundsManager — cached per-agent funds, transaction limits and ledger.

Funds snapshots come from the chain client and are cached for a few minutes.
Limit checks answer yes/no and never raise. The ledger is an in-memory
ring buffer per agent; it backs the daily cap and the fee-based returns.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Sequence

from lpcruise.config import settings
from lpcruise.core.errors import AgentNotRegistered, WalletNotBound
from lpcruise.core.events import Subscribers
from lpcruise.core.types import AgentConfig, FundsStatus, Position, utcnow
from lpcruise.finance.chain import ChainClient

logger = logging.getLogger(__name__)


class LedgerType(StrEnum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    ADD_LIQUIDITY = "add_liquidity"
    REMOVE_LIQUIDITY = "remove_liquidity"
    SWAP = "swap"
    FEE = "fee"
    EMERGENCY_EXIT = "emergency_exit"


# Moves capital out of the free balance
OUTFLOWS = frozenset({LedgerType.WITHDRAW, LedgerType.ADD_LIQUIDITY, LedgerType.SWAP})
# Not counted toward the daily volume cap
UNCAPPED = frozenset({LedgerType.FEE, LedgerType.DEPOSIT})


@dataclass(frozen=True)
class LedgerEntry:
    amount: Decimal
    type: LedgerType
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Returns:
    total: float = 0.0
    daily: float = 0.0
    weekly: float = 0.0
    monthly: float = 0.0


@dataclass
class _AgentBook:
    config: AgentConfig
    funds: FundsStatus | None = None
    fetched_at: datetime | None = None
    initial_investment: Decimal = Decimal("0")
    ledger: deque[LedgerEntry] = field(default_factory=deque)


class FundsManager:
    def __init__(
        self,
        chain: ChainClient,
        cache_ttl_seconds: int | None = None,
        single_tx_limit_pct: Decimal | None = None,
        daily_limit_pct: Decimal | None = None,
        emergency_reserve: Decimal | None = None,
        ledger_size: int | None = None,
    ) -> None:
        self._chain = chain
        self.cache_ttl = timedelta(seconds=cache_ttl_seconds or settings.funds_cache_ttl_seconds)
        self.single_tx_limit_pct = single_tx_limit_pct or settings.single_tx_limit_pct
        self.daily_limit_pct = daily_limit_pct or settings.daily_limit_pct
        self.emergency_reserve = (
            settings.emergency_reserve if emergency_reserve is None else emergency_reserve
        )
        self.ledger_size = ledger_size or settings.ledger_size
        self._books: dict[str, _AgentBook] = {}
        # (agent_id, funds) whenever available balance drops under the reserve
        self.safety: Subscribers[[str, FundsStatus]] = Subscribers("funds-safety")

    # ── registration ──────────────────────────────────────────────────────────

    def register_agent(self, agent_id: str, config: AgentConfig) -> None:
        if agent_id in self._books:
            self._books[agent_id].config = config
            return
        self._books[agent_id] = _AgentBook(config=config, ledger=deque(maxlen=self.ledger_size))
        logger.info("[agent %s] Funds tracking on wallet %s", agent_id, config.wallet_id)

    def unregister_agent(self, agent_id: str) -> None:
        self._books.pop(agent_id, None)

    def is_registered(self, agent_id: str) -> bool:
        return agent_id in self._books

    def _book(self, agent_id: str) -> _AgentBook:
        try:
            return self._books[agent_id]
        except KeyError:
            raise AgentNotRegistered(agent_id) from None

    # ── funds snapshots ───────────────────────────────────────────────────────

    async def get_funds_status(self, agent_id: str, force_refresh: bool = False) -> FundsStatus:
        """Cached snapshot if fresh, otherwise re-read balance and positions.

        Raises AgentNotRegistered, WalletNotBound or ChainError.
        """
        book = self._book(agent_id)
        now = utcnow()
        if (
            not force_refresh
            and book.funds is not None
            and book.fetched_at is not None
            and now - book.fetched_at < self.cache_ttl
        ):
            return book.funds

        wallet_id = book.config.wallet_id
        if not wallet_id:
            raise WalletNotBound(agent_id)

        balance = await self._chain.get_balance(wallet_id)
        positions = await self._chain.get_positions(wallet_id)
        funds = FundsStatus.create(balance, positions, last_update=now)
        await self._store(agent_id, book, funds)
        logger.debug(
            "[agent %s] Funds refreshed: %s available, %d positions, %s total",
            agent_id, funds.available_balance, len(funds.positions), funds.total_value,
        )
        return funds

    async def update_funds_status(
        self,
        agent_id: str,
        available_balance: Decimal | None = None,
        positions: Sequence[Position] | None = None,
    ) -> FundsStatus:
        """Partial update; the total is always recomputed."""
        book = self._book(agent_id)
        current = book.funds or FundsStatus.empty()
        funds = FundsStatus.create(
            current.available_balance if available_balance is None else available_balance,
            current.positions if positions is None else positions,
        )
        await self._store(agent_id, book, funds)
        return funds

    def invalidate(self, agent_id: str) -> None:
        book = self._books.get(agent_id)
        if book is not None:
            book.fetched_at = None

    async def _store(self, agent_id: str, book: _AgentBook, funds: FundsStatus) -> None:
        book.funds = funds
        book.fetched_at = funds.last_update
        if book.initial_investment == 0 and funds.total_value > 0:
            # First non-empty snapshot is the baseline for total returns
            book.initial_investment = funds.total_value
            logger.info("[agent %s] Initial investment %s", agent_id, funds.total_value)
        if funds.available_balance < self.emergency_reserve:
            logger.warning(
                "[agent %s] Available balance %s under emergency reserve %s",
                agent_id, funds.available_balance, self.emergency_reserve,
            )
            await self.safety.notify(agent_id, funds)

    # ── limits ────────────────────────────────────────────────────────────────

    async def check_transaction_limit(
        self, agent_id: str, amount: Decimal, tx_type: LedgerType
    ) -> bool:
        """True if the transaction fits every limit. Never raises."""
        try:
            book = self._book(agent_id)
            funds = await self.get_funds_status(agent_id)
        except Exception as exc:
            logger.error("[agent %s] Limit check failed: %s", agent_id, exc)
            return False

        total = funds.total_value
        if amount > total * self.single_tx_limit_pct:
            logger.warning(
                "[agent %s] %s %s exceeds single-transaction limit (%s of %s)",
                agent_id, tx_type, amount, self.single_tx_limit_pct, total,
            )
            return False

        spent_today = self._volume_since(book, _local_midnight())
        if spent_today + amount > total * self.daily_limit_pct:
            logger.warning(
                "[agent %s] %s %s would exceed daily limit (%s already today, cap %s of %s)",
                agent_id, tx_type, amount, spent_today, self.daily_limit_pct, total,
            )
            return False

        if tx_type in OUTFLOWS and funds.available_balance - amount < book.config.min_balance:
            logger.warning(
                "[agent %s] %s %s would leave less than the %s minimum balance",
                agent_id, tx_type, amount, book.config.min_balance,
            )
            return False

        if tx_type == LedgerType.ADD_LIQUIDITY and len(funds.positions) >= book.config.max_positions:
            logger.warning(
                "[agent %s] Already at %d positions (max %d)",
                agent_id, len(funds.positions), book.config.max_positions,
            )
            return False

        return True

    @staticmethod
    def _volume_since(book: _AgentBook, since: datetime) -> Decimal:
        return sum(
            (e.amount for e in book.ledger if e.timestamp >= since and e.type not in UNCAPPED),
            Decimal("0"),
        )

    # ── ledger & returns ──────────────────────────────────────────────────────

    def record_transaction(
        self, agent_id: str, amount: Decimal, tx_type: LedgerType, timestamp: datetime | None = None
    ) -> None:
        book = self._book(agent_id)
        book.ledger.append(LedgerEntry(amount=amount, type=tx_type, timestamp=timestamp or utcnow()))
        if tx_type == LedgerType.DEPOSIT:
            book.initial_investment += amount
        logger.info("[agent %s] Ledger %s %s", agent_id, tx_type, amount)

    def get_ledger(self, agent_id: str) -> list[LedgerEntry]:
        return list(self._book(agent_id).ledger)

    def set_initial_investment(self, agent_id: str, amount: Decimal) -> None:
        self._book(agent_id).initial_investment = amount

    def get_initial_investment(self, agent_id: str) -> Decimal:
        return self._book(agent_id).initial_investment

    async def calculate_returns(self, agent_id: str) -> Returns:
        book = self._book(agent_id)
        funds = await self.get_funds_status(agent_id)
        current = funds.total_value
        initial = book.initial_investment
        if initial == 0 or current == 0:
            return Returns()

        now = utcnow()

        def fees(days: int) -> Decimal:
            since = now - timedelta(days=days)
            return sum(
                (e.amount for e in book.ledger if e.type == LedgerType.FEE and e.timestamp >= since),
                Decimal("0"),
            )

        return Returns(
            total=float((current - initial) / initial),
            daily=float(fees(1) / current),
            weekly=float(fees(7) / current),
            monthly=float(fees(30) / current),
        )


def _local_midnight() -> datetime:
    """Start of today in the host's local timezone, as an aware datetime."""
    local_now = datetime.now().astimezone()
    return local_now.replace(hour=0, minute=0, second=0, microsecond=0)
