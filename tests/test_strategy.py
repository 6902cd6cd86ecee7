from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from lotwise.core.errors import InvalidArgumentsError, NoPositionsError
from lotwise.core.providers import EngineDeps, InMemoryTransactionStore, StaticPositionProvider, StaticSimilarityProvider
from lotwise.core.strategy import current_allocations, optimize, optimize_harvest_strategy
from lotwise.core.types import HarvestOpportunity, Position, TransactionKind, TransactionRecord

TODAY = dt.date(2024, 11, 1)


def _opp(symbol, loss, priority, *, risky=False, harvestable=True, options=()):
    return HarvestOpportunity(
        symbol_id=1,
        symbol=symbol,
        current_value=Decimal("1000"),
        cost_basis=Decimal("1000") + Decimal(loss),
        unrealized_loss=Decimal(loss),
        tax_benefit=Decimal(loss) * Decimal("0.22"),
        wash_sale_risk=risky,
        harvestable=harvestable,
        replacement_options=list(options),
        priority_score=Decimal(priority),
    )


def test_actions_are_ordered_by_priority_and_risky_ones_delayed():
    opps = [
        _opp("LOW", "200", "0.05"),
        _opp("RISKY", "500", "0.20", risky=True),
        _opp("HIGH", "300", "0.30"),
        _opp("GONE", "900", "0.90", harvestable=False),
    ]

    strategy = optimize(opps, {}, Decimal("0.24"), today=TODAY)

    assert [a.sell_symbol for a in strategy.actions] == ["HIGH", "RISKY", "LOW"]
    risky = strategy.actions[1]
    assert risky.wash_sale_compliant is False
    assert risky.execution_date == TODAY + dt.timedelta(days=31)
    assert strategy.actions[0].execution_date == TODAY
    assert strategy.execution_timeline.immediate_actions == 2
    assert strategy.execution_timeline.delayed_actions == 1
    assert strategy.execution_timeline.earliest_completion == TODAY + dt.timedelta(days=31)
    assert strategy.total_estimated_savings == Decimal("1000") * Decimal("0.24")
    assert strategy.risk_assessment == "Elevated"
    assert strategy.compliance_verified is False


def test_all_compliant_plan_completes_today():
    strategy = optimize([_opp("A", "200", "0.1")], None, Decimal("0.22"), today=TODAY)
    assert strategy.execution_timeline.earliest_completion == TODAY
    assert strategy.risk_assessment == "Low"
    assert strategy.actions[0].action_type == "tax_loss_harvest"


def test_replacement_skips_substantially_identical_options():
    similarity = StaticSimilarityProvider(pair_scores={("VTI", "ITOT"): Decimal("0.98")})
    opp = _opp("VTI", "400", "0.4", options=["ITOT", "SCHB"])

    with_screen = optimize([opp], {}, Decimal("0.22"), today=TODAY, similarity=similarity)
    without = optimize([opp], {}, Decimal("0.22"), today=TODAY)

    assert with_screen.actions[0].recommended_replacement == "SCHB"
    assert with_screen.compliance_verified is True
    assert without.actions[0].recommended_replacement == "ITOT"


def test_allocation_drift_against_targets():
    strategy = optimize(
        [],
        {"EQUITY": Decimal("60"), "BOND": Decimal("40")},
        Decimal("0.22"),
        current_allocations={"EQUITY": Decimal("80"), "BOND": Decimal("20")},
        today=TODAY,
    )
    assert strategy.allocation_drift == {"EQUITY": Decimal("20"), "BOND": Decimal("-20")}
    assert strategy.actions == []
    assert strategy.total_estimated_savings == 0


@pytest.mark.parametrize("rate", [Decimal("1.5"), Decimal("-0.1"), 0.22])
def test_tax_rate_must_be_exact_and_in_range(rate):
    with pytest.raises(InvalidArgumentsError):
        optimize([], {}, rate, today=TODAY)


def test_current_allocations_by_asset_class():
    positions = [
        Position(symbol_id=1, symbol="VTI", current_value=Decimal("600"), cost_basis=Decimal("0"), unrealized_gain_loss=Decimal("0"), asset_class="EQUITY"),
        Position(symbol_id=2, symbol="VXUS", current_value=Decimal("150"), cost_basis=Decimal("0"), unrealized_gain_loss=Decimal("0"), asset_class="EQUITY"),
        Position(symbol_id=3, symbol="BND", current_value=Decimal("250"), cost_basis=Decimal("0"), unrealized_gain_loss=Decimal("0"), asset_class="BOND"),
    ]
    assert current_allocations(positions) == {"BOND": Decimal("25"), "EQUITY": Decimal("75")}
    assert current_allocations([]) == {}


def test_optimize_harvest_strategy_end_to_end():
    positions = [
        Position(symbol_id=1, symbol="VTI", current_value=Decimal("7000"), cost_basis=Decimal("10000"), unrealized_gain_loss=Decimal("-3000"), asset_class="EQUITY"),
        Position(symbol_id=2, symbol="BND", current_value=Decimal("3000"), cost_basis=Decimal("2000"), unrealized_gain_loss=Decimal("1000"), asset_class="BOND"),
    ]
    recent_buy = TransactionRecord(
        id=1,
        account_id=1,
        symbol_id=1,
        kind=TransactionKind.BUY,
        quantity=Decimal("1"),
        price=Decimal("70"),
        total_amount=Decimal("70"),
        date=TODAY - dt.timedelta(days=3),
    )
    deps = EngineDeps(
        store=InMemoryTransactionStore([recent_buy]),
        positions=StaticPositionProvider(positions),
        similarity=StaticSimilarityProvider(substitutes={"VTI": ["SCHB"]}),
    )

    strategy = optimize_harvest_strategy(deps, {"EQUITY": Decimal("60")}, Decimal("0.3"), today=TODAY)

    (action,) = strategy.actions
    assert action.sell_symbol == "VTI"
    assert action.estimated_tax_savings == Decimal("900")
    assert action.recommended_replacement == "SCHB"
    assert action.wash_sale_compliant is False
    assert strategy.current_allocations == {"BOND": Decimal("30"), "EQUITY": Decimal("70")}
    assert strategy.allocation_drift == {"EQUITY": Decimal("10")}


def test_optimize_harvest_strategy_without_positions():
    deps = EngineDeps(store=InMemoryTransactionStore(), positions=StaticPositionProvider(), similarity=StaticSimilarityProvider())
    with pytest.raises(NoPositionsError):
        optimize_harvest_strategy(deps, {}, Decimal("0.22"), today=TODAY)
