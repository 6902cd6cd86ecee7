from __future__ import annotations

import datetime as dt
import logging
from dataclasses import replace
from decimal import Decimal

import pytest

from lotwise.core.lot_allocator import allocate, classify_holding, fifo_allocate, fifo_by_account, holding_period, split_history
from lotwise.core.types import HoldingTerm, TransactionKind, TransactionRecord


def _buy(id, date, qty, total, price=None):
    qty = Decimal(qty)
    total = Decimal(total)
    return TransactionRecord(
        id=id,
        account_id=1,
        symbol_id=1,
        kind=TransactionKind.BUY,
        quantity=qty,
        price=Decimal(price) if price is not None else total / qty,
        total_amount=total,
        date=date,
        symbol="AAA",
    )


def _sell(id, date, qty, total):
    return TransactionRecord(
        id=id,
        account_id=1,
        symbol_id=1,
        kind=TransactionKind.SELL,
        quantity=-Decimal(qty),
        price=Decimal(total) / Decimal(qty),
        total_amount=Decimal(total),
        date=date,
        symbol="AAA",
    )


def test_exactly_one_year_is_short_term():
    assert classify_holding(365) is HoldingTerm.SHORT_TERM
    assert classify_holding(366) is HoldingTerm.LONG_TERM
    assert holding_period(dt.date(2023, 1, 1), dt.date(2024, 1, 1)).classification is HoldingTerm.SHORT_TERM
    assert holding_period(dt.date(2023, 1, 1), dt.date(2024, 1, 2)).is_long_term


def test_single_lot_partial_sale_prorates_cost():
    buys = [_buy(1, dt.date(2023, 1, 1), "100", "15000", "150")]
    sells = [_sell(2, dt.date(2024, 6, 1), "50", "8500")]

    result = fifo_allocate(buys, sells)

    (sale,) = result.sales
    assert sale.total_cost_basis == Decimal("7500")
    assert sale.realized_gain_loss == Decimal("1000")
    assert sale.allocations[0].holding_period.classification is HoldingTerm.LONG_TERM
    (lot,) = result.open_lots
    assert lot.remaining_quantity == Decimal("50")
    assert lot.remaining_cost == Decimal("7500")
    assert result.warnings == []


def test_sale_spanning_two_lots_consumes_oldest_first():
    buys = [
        _buy(2, dt.date(2024, 3, 1), "1", "200"),
        _buy(1, dt.date(2023, 1, 1), "1", "100"),
    ]
    sells = [_sell(3, dt.date(2024, 6, 1), "1.5", "450")]

    (sale,) = allocate(buys, sells)

    assert [a.tax_lot.source_transaction_id for a in sale.allocations] == [1, 2]
    assert [a.quantity_allocated for a in sale.allocations] == [Decimal("1"), Decimal("0.5")]
    assert sale.total_cost_basis == Decimal("200")
    assert sale.allocations[0].holding_period.classification is HoldingTerm.LONG_TERM
    assert sale.allocations[1].holding_period.classification is HoldingTerm.SHORT_TERM


def test_lot_split_across_sales_adds_back_to_total_cost():
    buys = [_buy(1, dt.date(2023, 1, 1), "3", "100")]
    sells = [
        _sell(2, dt.date(2023, 2, 1), "1", "40"),
        _sell(3, dt.date(2023, 3, 1), "1", "40"),
        _sell(4, dt.date(2023, 4, 1), "1", "40"),
    ]

    result = fifo_allocate(buys, sells)

    assert sum(s.total_cost_basis for s in result.sales) == Decimal("100")
    assert result.open_lots == []


def test_insufficient_lots_reports_unmatched_quantity(caplog):
    buys = [_buy(1, dt.date(2024, 1, 1), "10", "1000")]
    sells = [_sell(2, dt.date(2024, 2, 1), "15", "1800")]

    with caplog.at_level(logging.WARNING, logger="lotwise.core.lot_allocator"):
        result = fifo_allocate(buys, sells)

    (sale,) = result.sales
    assert sale.is_partial
    assert sale.unmatched_quantity == Decimal("5")
    assert sale.quantity_sold == Decimal("10")
    assert sale.total_cost_basis == Decimal("1000")
    assert result.is_partial
    assert "5 of 15 shares unmatched" in result.warnings[0]
    assert any("Insufficient buy lots" in r.getMessage() for r in caplog.records)


def test_sell_before_any_buy_is_unmatched_even_if_a_later_buy_exists():
    buys = [_buy(2, dt.date(2024, 3, 1), "10", "1000")]
    sells = [_sell(1, dt.date(2024, 1, 1), "5", "600")]

    result = fifo_allocate(buys, sells)

    (sale,) = result.sales
    assert sale.allocations == ()
    assert sale.unmatched_quantity == Decimal("5")
    assert result.open_lots[0].remaining_quantity == Decimal("10")


def test_same_day_buy_is_available_to_same_day_sell():
    day = dt.date(2024, 5, 1)
    result = fifo_allocate([_buy(5, day, "2", "200")], [_sell(4, day, "2", "210")])
    (sale,) = result.sales
    assert sale.unmatched_quantity == 0
    assert sale.realized_gain_loss == Decimal("10")


def test_zero_quantity_buy_is_skipped_with_warning():
    empty = replace(_buy(2, dt.date(2024, 1, 2), "1", "0"), quantity=Decimal("0"))
    buys = [_buy(1, dt.date(2024, 1, 1), "1", "100"), empty]
    result = fifo_allocate(buys, [])
    assert len(result.open_lots) == 1
    assert "zero quantity" in result.warnings[0]


def test_wrong_kind_is_rejected():
    with pytest.raises(ValueError):
        fifo_allocate([_sell(1, dt.date(2024, 1, 1), "1", "1")], [])


def test_split_history_ignores_cash_events():
    dividend = TransactionRecord(
        id=9,
        account_id=1,
        symbol_id=1,
        kind=TransactionKind.DIVIDEND,
        quantity=Decimal("0"),
        price=Decimal("0"),
        total_amount=Decimal("12.50"),
        date=dt.date(2024, 1, 1),
    )
    buys, sells = split_history([_buy(1, dt.date(2024, 1, 1), "1", "1"), dividend, _sell(2, dt.date(2024, 1, 2), "1", "2")])
    assert [t.id for t in buys] == [1]
    assert [t.id for t in sells] == [2]


def test_accounts_never_share_lots():
    other = replace(_buy(2, dt.date(2024, 1, 1), "1", "500"), account_id=2)
    sell = replace(_sell(3, dt.date(2024, 4, 1), "1", "400"), account_id=2)
    history = [_buy(1, dt.date(2023, 1, 1), "10", "1000"), other, sell]

    result = fifo_by_account(history)

    (sale,) = result.sales
    assert [a.tax_lot.source_transaction_id for a in sale.allocations] == [2]
    assert sale.realized_gain_loss == Decimal("-100")
    assert [(l.source_transaction_id, l.remaining_quantity) for l in result.open_lots] == [(1, Decimal("10"))]
