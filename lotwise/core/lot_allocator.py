"""
FIFO tax-lot allocation for a single symbol.

Buys become an oldest-first deque of TaxLots. Sells are replayed in date order and
consume lots head-first. Nothing here touches a session or shared state, so runs
for different symbols can proceed in parallel.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

from lotwise.core.types import (
    HoldingPeriod,
    HoldingTerm,
    LotAllocation,
    RealizedSale,
    TaxLot,
    TransactionKind,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
LONG_TERM_DAYS = 365


def classify_holding(days: int, *, long_term_days: int = LONG_TERM_DAYS) -> HoldingTerm:
    # Exactly one year is still short-term.
    return HoldingTerm.LONG_TERM if days > long_term_days else HoldingTerm.SHORT_TERM


def holding_period(purchase_date: dt.date, sale_date: dt.date, *, long_term_days: int = LONG_TERM_DAYS) -> HoldingPeriod:
    days = (sale_date - purchase_date).days
    return HoldingPeriod(days=days, classification=classify_holding(days, long_term_days=long_term_days))


def _chrono_key(txn: TransactionRecord) -> tuple[dt.date, int]:
    return (txn.date, txn.id)


def shortfall_message(sale: RealizedSale) -> str:
    t = sale.sale_transaction
    return (
        f"Insufficient buy lots for sell {t.id} on {t.date.isoformat()}: "
        f"{sale.unmatched_quantity} of {abs(t.quantity)} shares unmatched."
    )


@dataclass
class FifoResult:
    sales: list[RealizedSale]
    open_lots: list[TaxLot]
    warnings: list[str] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return any(s.is_partial for s in self.sales)


class LotQueue:
    """Oldest-first queue of open lots with O(1) head consumption."""

    def __init__(self, lots: Iterable[TaxLot] = ()) -> None:
        self._lots: deque[TaxLot] = deque(lots)

    def __len__(self) -> int:
        return len(self._lots)

    def __iter__(self):
        return iter(self._lots)

    def push(self, lot: TaxLot) -> None:
        self._lots.append(lot)

    def consume(
        self,
        quantity: Decimal,
        *,
        sale_date: dt.date,
        long_term_days: int = LONG_TERM_DAYS,
    ) -> tuple[list[LotAllocation], Decimal]:
        """Match `quantity` against the head of the queue.

        Returns the allocations made and the quantity left unmatched (non-zero only
        when the queue ran dry).
        """
        remaining = quantity
        allocations: list[LotAllocation] = []
        while remaining > 0 and self._lots:
            lot = self._lots[0]
            period = holding_period(lot.purchase_date, sale_date, long_term_days=long_term_days)
            before = lot.snapshot()
            take = min(lot.remaining_quantity, remaining)
            cost = lot.consume(take)
            if lot.remaining_quantity == 0:
                self._lots.popleft()
            allocations.append(
                LotAllocation(tax_lot=before, quantity_allocated=take, cost_basis=cost, holding_period=period)
            )
            remaining -= take
        return allocations, remaining


def fifo_allocate(
    buy_transactions: Iterable[TransactionRecord],
    sell_transactions: Iterable[TransactionRecord],
    *,
    long_term_days: int = LONG_TERM_DAYS,
) -> FifoResult:
    buys = sorted(buy_transactions, key=_chrono_key)
    sells = sorted(sell_transactions, key=_chrono_key)
    warnings: list[str] = []

    # Lots are only matchable once purchased; replay buys and sells on one timeline.
    events: list[TransactionRecord] = []
    for t in buys:
        if t.kind is not TransactionKind.BUY:
            raise ValueError(f"Transaction {t.id} is {t.kind.value}, expected BUY")
        if t.quantity == 0:
            warnings.append(f"Buy {t.id} on {t.date.isoformat()} has zero quantity; skipped.")
            logger.warning("Skipping zero-quantity buy %s", t.id)
            continue
        events.append(t)
    for t in sells:
        if t.kind is not TransactionKind.SELL:
            raise ValueError(f"Transaction {t.id} is {t.kind.value}, expected SELL")
        events.append(t)
    # Same-day buys are queued before same-day sells.
    events.sort(key=lambda t: (t.date, 0 if t.kind is TransactionKind.BUY else 1, t.id))

    queue = LotQueue()
    sales: list[RealizedSale] = []
    for t in events:
        if t.kind is TransactionKind.BUY:
            queue.push(TaxLot.from_buy(t))
            continue

        sell_qty = abs(t.quantity)
        allocations, unmatched = queue.consume(sell_qty, sale_date=t.date, long_term_days=long_term_days)
        proceeds = abs(t.total_amount)
        cost_basis = sum((a.cost_basis for a in allocations), ZERO)
        sale = RealizedSale(
            sale_transaction=t,
            allocations=tuple(allocations),
            total_proceeds=proceeds,
            total_cost_basis=cost_basis,
            realized_gain_loss=proceeds - cost_basis,
            unmatched_quantity=unmatched,
        )
        if sale.is_partial:
            logger.warning("Insufficient buy lots for complete allocation, remaining: %s (sell %s)", unmatched, t.id)
            warnings.append(shortfall_message(sale))
        sales.append(sale)

    return FifoResult(sales=sales, open_lots=list(queue), warnings=warnings)


def allocate(
    buy_transactions: Iterable[TransactionRecord],
    sell_transactions: Iterable[TransactionRecord],
    *,
    long_term_days: int = LONG_TERM_DAYS,
) -> list[RealizedSale]:
    return fifo_allocate(buy_transactions, sell_transactions, long_term_days=long_term_days).sales


def split_history(transactions: Iterable[TransactionRecord]) -> tuple[list[TransactionRecord], list[TransactionRecord]]:
    buys: list[TransactionRecord] = []
    sells: list[TransactionRecord] = []
    for t in transactions:
        if t.kind is TransactionKind.BUY:
            buys.append(t)
        elif t.kind is TransactionKind.SELL:
            sells.append(t)
        elif t.kind in (TransactionKind.DIVIDEND, TransactionKind.FEE, TransactionKind.INTEREST):
            continue
        else:  # pragma: no cover
            raise AssertionError(f"Unhandled transaction kind {t.kind!r}")
    return buys, sells


def fifo_by_account(
    transactions: Iterable[TransactionRecord],
    *,
    long_term_days: int = LONG_TERM_DAYS,
) -> FifoResult:
    """Run one FIFO queue per account and merge the results.

    Lots never cross accounts: a sell only consumes buys made in its own account.
    """
    by_account: dict[int, list[TransactionRecord]] = {}
    for t in transactions:
        by_account.setdefault(t.account_id, []).append(t)

    sales: list[RealizedSale] = []
    open_lots: list[TaxLot] = []
    warnings: list[str] = []
    for account_id in sorted(by_account):
        buys, sells = split_history(by_account[account_id])
        result = fifo_allocate(buys, sells, long_term_days=long_term_days)
        sales.extend(result.sales)
        open_lots.extend(result.open_lots)
        warnings.extend(result.warnings)

    sales.sort(key=lambda s: _chrono_key(s.sale_transaction))
    open_lots.sort(key=lambda l: (l.purchase_date, l.source_transaction_id))
    return FifoResult(sales=sales, open_lots=open_lots, warnings=warnings)
