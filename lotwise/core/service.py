"""Entry points consumed by the application layer (CLI, reports)."""

from __future__ import annotations

from lotwise.core.gains import (
    calculate_annual_summary,
    calculate_realized_gains,
    calculate_realized_gains_batch,
    calculate_unrealized_gains,
    generate_tax_lot_report,
)
from lotwise.core.harvest import identify_opportunities, recommend_replacements
from lotwise.core.providers import EngineDeps
from lotwise.core.strategy import optimize_harvest_strategy
from lotwise.core.wash_sale import check_wash_sale_compliance

__all__ = [
    "EngineDeps",
    "calculate_annual_summary",
    "calculate_realized_gains",
    "calculate_realized_gains_batch",
    "calculate_unrealized_gains",
    "check_wash_sale_compliance",
    "generate_tax_lot_report",
    "identify_opportunities",
    "optimize_harvest_strategy",
    "recommend_replacements",
]
