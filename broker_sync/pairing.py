"""
Broker Sync - Trade Pairing Engine.

============================================================
PURPOSE
============================================================
Turn raw provider fills into round-trip journal trades.

ALGORITHM:
1. Group fills by symbol (first-seen order)
2. Split each group into BUY and SELL lists, sorted by fill time
   (stable: input order breaks ties)
3. Walk both lists with two indices, pairing the earliest unmatched
   BUY with the earliest unmatched SELL
4. Matched quantity is the smaller of the two fill quantities; any
   remainder of the larger fill becomes an OPEN trade
5. Leftover BUYs become OPEN LONG trades, leftover SELLs OPEN SHORT

DETERMINISM:
The same fills in the same order always produce the same trades
with the same identifiers. No I/O, no clock.

============================================================
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .types import (
    FillSide,
    Platform,
    RawFill,
    TradeCandidate,
    TradeDirection,
    TradeStatus,
    infer_instrument_type,
)


logger = logging.getLogger(__name__)


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _time_key(fill: RawFill) -> datetime:
    filled_at = fill.filled_at
    if filled_at is None:
        return _EPOCH
    if filled_at.tzinfo is None:
        return filled_at.replace(tzinfo=timezone.utc)
    return filled_at


def _fill_ref(fill: RawFill) -> str:
    return fill.fill_id or fill.order_id or "unknown"


class _IdAllocator:
    """Keeps trade ids unique within one pairing pass."""

    def __init__(self, platform: Platform):
        self._prefix = platform.value.lower()
        self._seen: Dict[str, int] = {}

    def allocate(self, *parts: str) -> str:
        base = "_".join((self._prefix,) + parts)
        count = self._seen.get(base, 0)
        self._seen[base] = count + 1
        if count == 0:
            return base
        return f"{base}_{count}"


def _notes(platform: Platform, fill: RawFill) -> str:
    return f"Auto-synced from {platform.value} - {fill.order_id}"


def _open_trade(
    fill: RawFill,
    quantity: Decimal,
    direction: TradeDirection,
    platform: Platform,
    trade_id: str,
    profit_loss: Optional[Decimal] = None,
) -> TradeCandidate:
    return TradeCandidate(
        symbol=fill.symbol,
        direction=direction,
        instrument_type=infer_instrument_type(fill.symbol, fill.product_type),
        entry_price=fill.price,
        quantity=quantity,
        entry_at=fill.filled_at,
        platform=platform,
        platform_trade_id=trade_id,
        status=TradeStatus.OPEN,
        profit_loss=profit_loss,
        exchange=fill.exchange,
        product_type=fill.product_type,
        notes=_notes(platform, fill),
    )


def _complete_trade(
    buy: RawFill,
    sell: RawFill,
    quantity: Decimal,
    platform: Platform,
    trade_id: str,
) -> TradeCandidate:
    # Sell minus buy price is the P&L per unit in both directions
    profit_loss = (sell.price - buy.price) * quantity

    if _time_key(buy) <= _time_key(sell):
        direction = TradeDirection.LONG
        entry, exit_ = buy, sell
    else:
        direction = TradeDirection.SHORT
        entry, exit_ = sell, buy

    return TradeCandidate(
        symbol=entry.symbol,
        direction=direction,
        instrument_type=infer_instrument_type(entry.symbol, entry.product_type),
        entry_price=entry.price,
        exit_price=exit_.price,
        quantity=quantity,
        entry_at=entry.filled_at,
        exit_at=exit_.filled_at,
        platform=platform,
        platform_trade_id=trade_id,
        status=TradeStatus.COMPLETE,
        profit_loss=profit_loss,
        exchange=entry.exchange,
        product_type=entry.product_type,
        notes=_notes(platform, entry),
    )


# ============================================================
# PAIRING
# ============================================================

def pair_fills(fills: Sequence[RawFill], platform: Platform) -> List[TradeCandidate]:
    """
    Pair raw fills into trade candidates.

    Args:
        fills: Raw fills in provider order
        platform: Platform the fills came from (id prefix)

    Returns:
        Trade candidates, grouped by symbol in first-seen order
    """
    groups: Dict[str, List[RawFill]] = {}
    for fill in fills:
        groups.setdefault(fill.symbol, []).append(fill)

    ids = _IdAllocator(platform)
    candidates: List[TradeCandidate] = []

    for symbol, group in groups.items():
        buys = sorted((f for f in group if f.side == FillSide.BUY), key=_time_key)
        sells = sorted((f for f in group if f.side == FillSide.SELL), key=_time_key)

        i = 0
        j = 0
        while i < len(buys) and j < len(sells):
            buy = buys[i]
            sell = sells[j]
            matched = min(buy.quantity, sell.quantity)

            candidates.append(_complete_trade(
                buy,
                sell,
                matched,
                platform,
                ids.allocate(_fill_ref(buy), _fill_ref(sell)),
            ))

            if buy.quantity > matched:
                candidates.append(_open_trade(
                    buy,
                    buy.quantity - matched,
                    TradeDirection.LONG,
                    platform,
                    ids.allocate(_fill_ref(buy), "open"),
                ))
            elif sell.quantity > matched:
                candidates.append(_open_trade(
                    sell,
                    sell.quantity - matched,
                    TradeDirection.SHORT,
                    platform,
                    ids.allocate(_fill_ref(sell), "open"),
                ))

            i += 1
            j += 1

        for buy in buys[i:]:
            candidates.append(_open_trade(
                buy,
                buy.quantity,
                TradeDirection.LONG,
                platform,
                ids.allocate(_fill_ref(buy), "open"),
                profit_loss=buy.reported_pnl,
            ))

        for sell in sells[j:]:
            candidates.append(_open_trade(
                sell,
                sell.quantity,
                TradeDirection.SHORT,
                platform,
                ids.allocate(_fill_ref(sell), "open"),
                profit_loss=sell.reported_pnl,
            ))

        logger.debug(
            f"Paired {symbol}: {len(buys)} buys, {len(sells)} sells, "
            f"{min(len(buys), len(sells))} round trips"
        )

    return candidates
