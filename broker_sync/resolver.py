"""
Broker Sync - Dedup/Upsert Resolver.

============================================================
PURPOSE
============================================================
Persist trade candidates exactly once per natural key
(user, platform, platform_trade_id).

RULES:
- Candidates without an entry timestamp, with non-positive
  quantity or with a negative entry price are skipped
- Existing trades are updated in place, new ones created
- A duplicate-key insert from a concurrent sync becomes an update
- P&L: candidate value, else derived from prices, else null
- Prices are kept to two decimal places

Running the same candidates twice leaves the store unchanged.

============================================================
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .store import DuplicateTradeError, TradeStore
from .types import CanonicalTrade, TradeCandidate, TradeDirection, utc_now


logger = logging.getLogger(__name__)


class ResolveOutcome(Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    SKIPPED = "SKIPPED"


@dataclass
class ResolveResult:
    """Outcome of resolving one candidate."""

    outcome: ResolveOutcome
    trade: Optional[CanonicalTrade] = None
    reason: Optional[str] = None


@dataclass
class ResolveCounts:
    created: int = 0
    updated: int = 0
    skipped: int = 0

    def add(self, result: ResolveResult) -> None:
        if result.outcome == ResolveOutcome.CREATED:
            self.created += 1
        elif result.outcome == ResolveOutcome.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1


def derive_profit_loss(
    direction: TradeDirection,
    entry_price: Decimal,
    exit_price: Optional[Decimal],
    quantity: Decimal,
) -> Optional[Decimal]:
    """(exit - entry) * quantity, sign flipped for shorts. None while open."""
    if exit_price is None:
        return None
    sign = Decimal(1) if direction == TradeDirection.LONG else Decimal(-1)
    return (exit_price - entry_price) * quantity * sign


class TradeResolver:
    """
    Dedup/upsert of trade candidates against a TradeStore.
    """

    def __init__(self, store: TradeStore, price_precision: int = 2):
        self._store = store
        self._quantum = Decimal(1).scaleb(-price_precision)

    def _round(self, value: Optional[Decimal]) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(value).quantize(self._quantum, rounding=ROUND_HALF_UP)

    @staticmethod
    def validate(candidate: TradeCandidate) -> Optional[str]:
        """Return a skip reason, or None when the candidate is valid."""
        if candidate.entry_at is None:
            return "missing entry timestamp"
        if candidate.quantity is None or candidate.quantity <= 0:
            return f"non-positive quantity {candidate.quantity}"
        if candidate.entry_price is None or candidate.entry_price < 0:
            return f"negative entry price {candidate.entry_price}"
        if not candidate.platform_trade_id:
            return "missing platform trade id"
        return None

    def _profit_loss(self, candidate: TradeCandidate) -> Optional[Decimal]:
        if candidate.profit_loss is not None:
            return self._round(candidate.profit_loss)
        return self._round(derive_profit_loss(
            candidate.direction,
            candidate.entry_price,
            candidate.exit_price,
            candidate.quantity,
        ))

    async def resolve(self, user_id: str, candidate: TradeCandidate) -> ResolveResult:
        """
        Create or update the trade for one candidate.

        Args:
            user_id: Owning user
            candidate: Paired trade candidate

        Returns:
            ResolveResult
        """
        reason = self.validate(candidate)
        if reason:
            logger.warning(f"Skipping trade {candidate.platform_trade_id}: {reason}")
            return ResolveResult(outcome=ResolveOutcome.SKIPPED, reason=reason)

        existing = await self._store.find_trade(
            user_id,
            candidate.platform,
            candidate.platform_trade_id,
        )

        fields = dict(
            symbol=candidate.symbol,
            direction=candidate.direction,
            instrument_type=candidate.instrument_type,
            entry_price=self._round(candidate.entry_price),
            exit_price=self._round(candidate.exit_price),
            quantity=candidate.quantity,
            entry_at=candidate.entry_at,
            exit_at=candidate.exit_at,
            profit_loss=self._profit_loss(candidate),
            status=candidate.status,
            exchange=candidate.exchange,
            product_type=candidate.product_type,
            notes=candidate.notes,
        )

        if existing is not None:
            return await self._update(existing, fields)

        trade = CanonicalTrade(
            id=self._store.new_id(),
            user_id=user_id,
            platform=candidate.platform,
            platform_trade_id=candidate.platform_trade_id,
            **fields,
        )
        try:
            trade = await self._store.insert_trade(trade)
        except DuplicateTradeError:
            # Another sync inserted the same key since the lookup
            existing = await self._store.find_trade(user_id, candidate.platform, candidate.platform_trade_id)
            if existing is None:
                raise
            logger.info(f"Trade {candidate.platform_trade_id} inserted concurrently, updating instead")
            return await self._update(existing, fields)
        return ResolveResult(outcome=ResolveOutcome.CREATED, trade=trade)

    async def _update(self, existing: CanonicalTrade, fields: Dict[str, Any]) -> ResolveResult:
        for name, value in fields.items():
            setattr(existing, name, value)
        existing.updated_at = utc_now()
        trade = await self._store.update_trade(existing)
        return ResolveResult(outcome=ResolveOutcome.UPDATED, trade=trade)

    async def resolve_all(
        self,
        user_id: str,
        candidates: Iterable[TradeCandidate],
    ) -> ResolveCounts:
        """Resolve candidates in order and count outcomes."""
        counts = ResolveCounts()
        for candidate in candidates:
            counts.add(await self.resolve(user_id, candidate))
        return counts
