from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Iterable, Optional

from lotwise.core.config import HarvestConfig
from lotwise.core.errors import LotwiseError, NoPositionsError, NotFoundError
from lotwise.core.providers import EngineDeps, SimilarityProvider
from lotwise.core.types import HarvestOpportunity, HarvestReport, Position, Replacement, SymbolInfo, TransactionRecord
from lotwise.core.validation import validate_optional_id, validate_symbol
from lotwise.utils.money import dsum, format_usd, safe_divide, to_decimal
from lotwise.utils.time import utc_today

logger = logging.getLogger(__name__)

DEFAULT_CORRELATION = Decimal("0.75")
DEFAULT_LIQUIDITY = Decimal("0.9")
DEFAULT_TAX_EFFICIENCY = Decimal("0.8")


def has_recent_purchase(
    position: Position,
    recent_transactions: Iterable[TransactionRecord],
    *,
    config: HarvestConfig,
    today: dt.date,
) -> bool:
    cutoff = today - dt.timedelta(days=config.wash_sale_days)
    return any(t.is_buy and t.symbol_id == position.symbol_id and t.date > cutoff for t in recent_transactions)


def tax_benefit(unrealized_loss: Decimal, rate: Decimal) -> Decimal:
    return abs(unrealized_loss) * rate


def priority_score(benefit: Decimal, current_value: Decimal, wash_sale_risk: bool, *, config: HarvestConfig) -> Decimal:
    score = safe_divide(benefit, current_value)
    if wash_sale_risk:
        score *= config.wash_risk_priority_factor
    return score


def _analyze_position(
    position: Position,
    recent: list[TransactionRecord],
    threshold: Decimal,
    *,
    config: HarvestConfig,
    similarity: Optional[SimilarityProvider],
    today: dt.date,
) -> Optional[HarvestOpportunity]:
    # Strict: a loss exactly at the threshold does not qualify.
    if not position.unrealized_gain_loss < -threshold:
        return None
    risk = has_recent_purchase(position, recent, config=config, today=today)
    benefit = tax_benefit(position.unrealized_gain_loss, config.marginal_tax_rate)
    return HarvestOpportunity(
        symbol_id=position.symbol_id,
        symbol=position.symbol,
        current_value=position.current_value,
        cost_basis=position.cost_basis,
        unrealized_loss=abs(position.unrealized_gain_loss),
        tax_benefit=benefit,
        wash_sale_risk=risk,
        harvestable=True,
        replacement_options=similarity.similar_assets(position.symbol) if similarity is not None else [],
        priority_score=priority_score(benefit, position.current_value, risk, config=config),
        asset_class=position.asset_class,
    )


def identify(
    positions: Iterable[Position],
    recent_transactions: Iterable[TransactionRecord],
    loss_threshold: Optional[Decimal] = None,
    *,
    config: Optional[HarvestConfig] = None,
    similarity: Optional[SimilarityProvider] = None,
    today: Optional[dt.date] = None,
) -> HarvestReport:
    config = config or HarvestConfig()
    today = today or utc_today()
    positions = list(positions)
    if not positions:
        logger.info("No positions found for tax loss harvesting")
        raise NoPositionsError("No positions to analyze")
    threshold = config.minimum_loss_threshold if loss_threshold is None else to_decimal(loss_threshold, field="loss_threshold")
    recent = list(recent_transactions)

    found = [
        opp
        for opp in (
            _analyze_position(p, recent, threshold, config=config, similarity=similarity, today=today) for p in positions
        )
        if opp is not None
    ]
    found.sort(key=lambda o: o.tax_benefit, reverse=True)

    return HarvestReport(
        opportunities=found,
        total_harvestable_losses=dsum(o.unrealized_loss for o in found),
        estimated_tax_savings=dsum(o.tax_benefit for o in found),
        positions_analyzed=len(positions),
        opportunities_found=len(found),
    )


def identify_opportunities(
    deps: EngineDeps,
    account_id: Optional[int] = None,
    loss_threshold: Optional[Decimal] = None,
    *,
    config: Optional[HarvestConfig] = None,
    today: Optional[dt.date] = None,
) -> HarvestReport:
    """
    Scan current positions for losses worth harvesting.

    Recent purchases (trailing `recent_window_days`) of the same symbol mark an
    opportunity as wash-sale risky; it is kept but ranked lower.
    """
    config = config or HarvestConfig()
    today = today or utc_today()
    logger.debug("Identifying tax-loss harvesting opportunities%s", f" for account {account_id}" if account_id else "")
    try:
        account_id = validate_optional_id(account_id, field="account_id")
        positions = deps.positions.positions(account_id)
        recent = deps.store.by_date_range(today - dt.timedelta(days=config.recent_window_days), today)
        if account_id is not None:
            recent = [t for t in recent if t.account_id == account_id]
        report = identify(positions, recent, loss_threshold, config=config, similarity=deps.similarity, today=today)
    except LotwiseError as e:
        logger.warning("Tax-loss harvesting analysis failed: %s", e)
        raise

    logger.debug(
        "Tax-loss harvesting analysis complete: %s opportunities, %s potential losses",
        report.opportunities_found,
        format_usd(report.total_harvestable_losses),
    )
    return report


def _metadata_decimal(info: SymbolInfo, key: str, default: Decimal) -> Decimal:
    raw = info.metadata.get(key)
    if raw is None:
        return default
    try:
        return to_decimal(str(raw), field=key)
    except LotwiseError:
        logger.warning("Ignoring non-numeric %s=%r for %s", key, raw, info.symbol)
        return default


def evaluate_replacement(candidate: SymbolInfo, allocation_target: Optional[Decimal] = None) -> Replacement:
    correlation = _metadata_decimal(candidate, "correlation", DEFAULT_CORRELATION)
    liquidity = _metadata_decimal(candidate, "liquidity_score", DEFAULT_LIQUIDITY)
    efficiency = _metadata_decimal(candidate, "tax_efficiency", DEFAULT_TAX_EFFICIENCY)
    return Replacement(
        symbol=candidate.symbol,
        suitability_score=(correlation + liquidity + efficiency) / 3,
        correlation_to_original=correlation,
        expense_ratio=candidate.expense_ratio,
        liquidity_score=liquidity,
        tax_efficiency=efficiency,
        allocation_target=allocation_target,
    )


def recommend_replacements(
    deps: EngineDeps,
    symbol: str,
    allocation_target: Optional[Decimal] = None,
    *,
    config: Optional[HarvestConfig] = None,
) -> list[Replacement]:
    config = config or HarvestConfig()
    logger.debug("Recommending replacements for %s", symbol)
    try:
        symbol = validate_symbol(symbol)
        target = None if allocation_target is None else to_decimal(allocation_target, field="allocation_target")
        original = deps.similarity.find_symbol(symbol)
        if original is None:
            raise NotFoundError(f"Unknown symbol {symbol}")
    except LotwiseError as e:
        logger.warning("Replacement recommendation failed for %s: %s", symbol, e)
        raise

    out: list[Replacement] = []
    for ticker in deps.similarity.similar_assets(original.symbol):
        # A substantially identical replacement would itself trigger the wash-sale rule.
        if deps.similarity.similarity_score(original.symbol, ticker) > config.substantially_identical_threshold:
            continue
        info = deps.similarity.find_symbol(ticker) or SymbolInfo(id=0, symbol=ticker.strip().upper())
        rep = evaluate_replacement(info, target)
        if rep.suitability_score >= config.min_suitability_score:
            out.append(rep)

    out.sort(key=lambda r: r.suitability_score, reverse=True)
    out = out[: config.max_replacements]
    logger.debug("Found %s suitable replacements for %s", len(out), symbol)
    return out
