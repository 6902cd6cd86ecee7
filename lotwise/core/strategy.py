from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from lotwise.core.config import HarvestConfig
from lotwise.core.errors import LotwiseError
from lotwise.core.harvest import identify_opportunities
from lotwise.core.providers import EngineDeps, SimilarityProvider
from lotwise.core.types import ExecutionTimeline, HarvestAction, HarvestOpportunity, HarvestStrategy, Position
from lotwise.core.validation import validate_optional_id, validate_rate
from lotwise.utils.money import dsum, safe_divide, to_decimal
from lotwise.utils.time import utc_today

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def current_allocations(positions: Iterable[Position]) -> dict[str, Decimal]:
    """Percent of total position value per asset class."""
    by_class: dict[str, Decimal] = {}
    for p in positions:
        key = p.asset_class or "UNKNOWN"
        by_class[key] = by_class.get(key, Decimal("0")) + p.current_value
    total = dsum(by_class.values())
    return {k: safe_divide(v, total) * HUNDRED for k, v in sorted(by_class.items())}


def _pick_replacement(
    opp: HarvestOpportunity, similarity: Optional[SimilarityProvider], config: HarvestConfig
) -> Optional[str]:
    for ticker in opp.replacement_options:
        if similarity is None:
            return ticker
        if similarity.similarity_score(opp.symbol, ticker) <= config.substantially_identical_threshold:
            return ticker
    return None


def _harvest_action(
    opp: HarvestOpportunity,
    tax_rate: Decimal,
    *,
    today: dt.date,
    config: HarvestConfig,
    similarity: Optional[SimilarityProvider] = None,
) -> HarvestAction:
    compliant = not opp.wash_sale_risk
    return HarvestAction(
        sell_symbol=opp.symbol,
        sell_amount=opp.current_value,
        estimated_loss=opp.unrealized_loss,
        estimated_tax_savings=opp.unrealized_loss * tax_rate,
        recommended_replacement=_pick_replacement(opp, similarity, config),
        priority=opp.priority_score,
        wash_sale_compliant=compliant,
        execution_date=today if compliant else today + dt.timedelta(days=config.safe_offset_days),
    )


def execution_timeline(actions: list[HarvestAction], *, today: dt.date, config: HarvestConfig) -> ExecutionTimeline:
    immediate = [a for a in actions if a.wash_sale_compliant]
    delayed = [a for a in actions if not a.wash_sale_compliant]
    return ExecutionTimeline(
        immediate_actions=len(immediate),
        delayed_actions=len(delayed),
        earliest_completion=today if not delayed else today + dt.timedelta(days=config.safe_offset_days),
    )


def optimize(
    opportunities: Iterable[HarvestOpportunity],
    portfolio_targets: Optional[Mapping[str, Decimal]],
    tax_rate: Decimal,
    *,
    current_allocations: Optional[Mapping[str, Decimal]] = None,
    today: Optional[dt.date] = None,
    config: Optional[HarvestConfig] = None,
    similarity: Optional[SimilarityProvider] = None,
) -> HarvestStrategy:
    """
    Order harvestable opportunities by priority and schedule them.

    Wash-sale risky positions are pushed past the window. When a similarity
    provider is given, replacements that are themselves substantially identical
    to the sold symbol are skipped and the plan counts as compliance-verified.
    """
    config = config or HarvestConfig()
    today = today or utc_today()
    tax_rate = validate_rate(tax_rate, field="tax_rate")

    ranked = sorted((o for o in opportunities if o.harvestable), key=lambda o: o.priority_score, reverse=True)
    actions = [_harvest_action(o, tax_rate, today=today, config=config, similarity=similarity) for o in ranked]
    timeline = execution_timeline(actions, today=today, config=config)

    current = dict(current_allocations or {})
    drift: dict[str, Decimal] = {}
    for asset_class, target in (portfolio_targets or {}).items():
        drift[asset_class] = current.get(asset_class, Decimal("0")) - to_decimal(target, field=f"target[{asset_class}]")

    return HarvestStrategy(
        actions=actions,
        total_estimated_savings=dsum(a.estimated_tax_savings for a in actions),
        execution_timeline=timeline,
        current_allocations=current,
        allocation_drift=drift,
        risk_assessment="Low" if timeline.delayed_actions == 0 else "Elevated",
        compliance_verified=similarity is not None,
    )


def optimize_harvest_strategy(
    deps: EngineDeps,
    portfolio_targets: Optional[Mapping[str, Decimal]],
    tax_rate: Decimal,
    *,
    account_id: Optional[int] = None,
    config: Optional[HarvestConfig] = None,
    today: Optional[dt.date] = None,
) -> HarvestStrategy:
    config = config or HarvestConfig()
    today = today or utc_today()
    logger.debug("Optimizing tax-loss harvesting strategy with %s tax rate", tax_rate)
    try:
        tax_rate = validate_rate(tax_rate, field="tax_rate")
        account_id = validate_optional_id(account_id, field="account_id")
        report = identify_opportunities(deps, account_id, config.minimum_loss_threshold, config=config, today=today)
        allocations = current_allocations(deps.positions.positions(account_id))
        strategy = optimize(
            report.opportunities,
            portfolio_targets,
            tax_rate,
            current_allocations=allocations,
            today=today,
            config=config,
            similarity=deps.similarity,
        )
    except LotwiseError as e:
        logger.warning("Harvest strategy optimization failed: %s", e)
        raise

    logger.debug("Harvest strategy optimization complete: %s recommended actions", len(strategy.actions))
    return strategy
