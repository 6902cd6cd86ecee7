from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from lotwise.core.config import HarvestConfig
from lotwise.core.errors import NoPositionsError, NotFoundError
from lotwise.core.harvest import evaluate_replacement, identify, identify_opportunities, recommend_replacements
from lotwise.core.strategy import optimize
from lotwise.core.providers import EngineDeps, InMemoryTransactionStore, StaticPositionProvider, StaticSimilarityProvider
from lotwise.core.types import Position, SymbolInfo, TransactionKind, TransactionRecord

TODAY = dt.date(2024, 3, 1)


def _pos(symbol_id, symbol, value, basis, account_id=None):
    value = Decimal(value)
    basis = Decimal(basis)
    return Position(
        symbol_id=symbol_id,
        symbol=symbol,
        current_value=value,
        cost_basis=basis,
        unrealized_gain_loss=value - basis,
        account_id=account_id,
        asset_class="EQUITY",
    )


def _buy(id, symbol_id, date, account_id=1):
    return TransactionRecord(
        id=id,
        account_id=account_id,
        symbol_id=symbol_id,
        kind=TransactionKind.BUY,
        quantity=Decimal("20"),
        price=Decimal("7"),
        total_amount=Decimal("140"),
        date=date,
    )


def test_loss_must_exceed_threshold_strictly():
    positions = [_pos(1, "AAA", "900.00", "1000.00"), _pos(2, "BBB", "899.99", "1000.00")]

    report = identify(positions, [], today=TODAY)

    assert [o.symbol for o in report.opportunities] == ["BBB"]
    assert report.positions_analyzed == 2
    assert report.opportunities_found == 1
    assert report.total_harvestable_losses == Decimal("100.01")


def test_gains_are_never_opportunities():
    report = identify([_pos(1, "AAA", "1500", "1000")], [], today=TODAY)
    assert report.opportunities == []
    assert report.estimated_tax_savings == 0


def test_empty_portfolio_is_reported_as_no_positions():
    with pytest.raises(NoPositionsError):
        identify([], [], today=TODAY)


def test_recent_purchase_halves_priority_but_keeps_opportunity():
    # Bought 100 @ $10, sold at $7 on day 40, rebought 20 on day 50.
    day0 = dt.date(2024, 1, 1)
    today = day0 + dt.timedelta(days=50)
    positions = [_pos(1, "AAA", "700", "1000"), _pos(2, "BBB", "700", "1000")]
    recent = [_buy(10, 1, day0 + dt.timedelta(days=50)), _buy(11, 2, today - dt.timedelta(days=30))]

    report = identify(positions, recent, today=today)

    by_symbol = {o.symbol: o for o in report.opportunities}
    assert by_symbol["AAA"].wash_sale_risk is True
    assert by_symbol["AAA"].harvestable is True
    assert by_symbol["BBB"].wash_sale_risk is False
    assert by_symbol["AAA"].tax_benefit == Decimal("66.00")
    assert by_symbol["AAA"].priority_score == by_symbol["BBB"].priority_score * Decimal("0.5")


def test_worthless_position_is_harvested():
    report = identify([_pos(1, "AAA", "0", "1000")], [], today=TODAY)

    (opp,) = report.opportunities
    assert opp.harvestable is True
    assert opp.unrealized_loss == Decimal("1000")
    assert opp.priority_score == 0

    strategy = optimize(report.opportunities, {}, Decimal("0.22"), today=TODAY)

    (action,) = strategy.actions
    assert action.sell_symbol == "AAA"
    assert action.sell_amount == 0
    assert action.estimated_tax_savings == Decimal("220.00")


def test_opportunities_sorted_by_tax_benefit():
    positions = [_pos(1, "SMALL", "800", "1000"), _pos(2, "BIG", "500", "1000"), _pos(3, "MID", "700", "1000")]
    report = identify(positions, [], today=TODAY)
    assert [o.symbol for o in report.opportunities] == ["BIG", "MID", "SMALL"]
    assert report.estimated_tax_savings == Decimal("1000") * Decimal("0.22")


def test_custom_threshold_and_rate():
    cfg = HarvestConfig(marginal_tax_rate=Decimal("0.35"))
    report = identify([_pos(1, "AAA", "950", "1000")], [], Decimal("25"), config=cfg, today=TODAY)
    assert report.opportunities[0].tax_benefit == Decimal("17.50")


def test_identify_opportunities_filters_recent_transactions_by_account():
    deps = EngineDeps(
        store=InMemoryTransactionStore([_buy(1, 1, TODAY - dt.timedelta(days=5), account_id=2)]),
        positions=StaticPositionProvider([_pos(1, "AAA", "500", "1000", account_id=1)]),
        similarity=StaticSimilarityProvider(substitutes={"AAA": ["BBB", "CCC"]}),
    )

    report = identify_opportunities(deps, account_id=1, today=TODAY)

    (opp,) = report.opportunities
    assert opp.wash_sale_risk is False
    assert opp.replacement_options == ["BBB", "CCC"]
    assert identify_opportunities(deps, today=TODAY).opportunities[0].wash_sale_risk is True


def _catalog():
    return {
        "VTI": SymbolInfo(id=1, symbol="VTI", asset_class="EQUITY"),
        "ITOT": SymbolInfo(id=2, symbol="ITOT", asset_class="EQUITY"),
        "SCHB": SymbolInfo(id=3, symbol="SCHB", asset_class="EQUITY", expense_ratio=Decimal("0.0003")),
        "IWV": SymbolInfo(
            id=4, symbol="IWV", asset_class="EQUITY", metadata={"correlation": "0.99", "liquidity_score": "0.95", "tax_efficiency": "0.9"}
        ),
        "ILLQ": SymbolInfo(
            id=5, symbol="ILLQ", asset_class="EQUITY", metadata={"correlation": "0.5", "liquidity_score": "0.2", "tax_efficiency": "0.5"}
        ),
    }


def test_recommend_replacements_filters_and_ranks():
    deps = EngineDeps(
        store=InMemoryTransactionStore(),
        positions=StaticPositionProvider(),
        similarity=StaticSimilarityProvider(
            symbols=_catalog(),
            pair_scores={("VTI", "ITOT"): Decimal("0.98")},
            substitutes={"VTI": ["ITOT", "SCHB", "IWV", "ILLQ"]},
        ),
    )

    out = recommend_replacements(deps, "vti", Decimal("60"))

    # ITOT is substantially identical, ILLQ scores too low.
    assert [r.symbol for r in out] == ["IWV", "SCHB"]
    assert out[0].suitability_score == (Decimal("0.99") + Decimal("0.95") + Decimal("0.9")) / 3
    assert out[1].suitability_score == (Decimal("0.75") + Decimal("0.9") + Decimal("0.8")) / 3
    assert out[1].expense_ratio == Decimal("0.0003")
    assert out[1].allocation_target == Decimal("60")


def test_recommend_replacements_caps_result_count():
    catalog = {f"F{i}": SymbolInfo(id=i, symbol=f"F{i}") for i in range(1, 9)}
    deps = EngineDeps(
        store=InMemoryTransactionStore(),
        positions=StaticPositionProvider(),
        similarity=StaticSimilarityProvider(symbols=catalog, substitutes={"F1": [f"F{i}" for i in range(2, 9)]}),
    )
    assert len(recommend_replacements(deps, "F1")) == 5
    assert len(recommend_replacements(deps, "F1", config=HarvestConfig(max_replacements=2))) == 2


def test_recommend_replacements_unknown_symbol():
    deps = EngineDeps(store=InMemoryTransactionStore(), positions=StaticPositionProvider(), similarity=StaticSimilarityProvider())
    with pytest.raises(NotFoundError):
        recommend_replacements(deps, "NOPE")


def test_evaluate_replacement_ignores_bad_metadata():
    rep = evaluate_replacement(SymbolInfo(id=1, symbol="X", metadata={"correlation": "n/a"}))
    assert rep.correlation_to_original == Decimal("0.75")
