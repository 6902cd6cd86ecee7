from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Iterable, Optional

from lotwise.core.config import HarvestConfig
from lotwise.core.errors import LotwiseError
from lotwise.core.providers import EngineDeps, SimilarityProvider
from lotwise.core.types import SimilarityAssessment, TransactionRecord, WashSaleComplianceResult
from lotwise.core.validation import validate_optional_id, validate_symbol
from lotwise.utils.time import utc_today

logger = logging.getLogger(__name__)

RISK_IDENTICAL = "Substantially identical securities"
RISK_RECENT_BUY = "Recent purchase activity in replacement security"


def _ticker(txn: TransactionRecord) -> str:
    return (txn.symbol or "UNKNOWN").strip().upper()


def _buys_of(transactions: Iterable[TransactionRecord], ticker: str) -> list[TransactionRecord]:
    return [t for t in transactions if t.is_buy and _ticker(t) == ticker]


def assess_similarity(
    similarity: SimilarityProvider,
    ticker_a: str,
    ticker_b: str,
    *,
    config: Optional[HarvestConfig] = None,
) -> SimilarityAssessment:
    config = config or HarvestConfig()
    score = similarity.similarity_score(ticker_a, ticker_b)
    score = max(Decimal("0"), min(Decimal("1"), score))
    return SimilarityAssessment(
        similarity_score=score,
        substantially_identical=score > config.substantially_identical_threshold,
    )


def conflicting_purchases(
    buy_symbol: str,
    transaction_date: dt.date,
    recent_transactions: Iterable[TransactionRecord],
    *,
    window_days: int,
) -> list[TransactionRecord]:
    # Both window bounds are exclusive.
    before = transaction_date - dt.timedelta(days=window_days)
    after = transaction_date + dt.timedelta(days=window_days)
    return [t for t in _buys_of(recent_transactions, buy_symbol) if before < t.date < after]


def safe_transaction_date(
    sell_symbol: str,
    recent_transactions: Iterable[TransactionRecord],
    *,
    config: HarvestConfig,
    today: dt.date,
) -> dt.date:
    purchases = _buys_of(recent_transactions, sell_symbol)
    if not purchases:
        return today
    latest = max(t.date for t in purchases)
    return latest + dt.timedelta(days=config.safe_offset_days)


def check(
    sell_symbol: str,
    buy_symbol: str,
    transaction_date: dt.date,
    recent_transactions: Iterable[TransactionRecord],
    similarity: SimilarityAssessment,
    *,
    config: Optional[HarvestConfig] = None,
    today: Optional[dt.date] = None,
) -> WashSaleComplianceResult:
    """
    Would selling `sell_symbol` and buying `buy_symbol` around `transaction_date`
    trip the wash-sale rule?

    Dissimilar replacements are always compliant. A substantially identical one is
    compliant only when no purchase of it falls strictly inside the window.
    """
    config = config or HarvestConfig()
    today = today or utc_today()
    sell_symbol = sell_symbol.strip().upper()
    buy_symbol = buy_symbol.strip().upper()
    recent = list(recent_transactions)

    conflicts: list[TransactionRecord] = []
    if similarity.substantially_identical:
        conflicts = conflicting_purchases(buy_symbol, transaction_date, recent, window_days=config.wash_sale_days)

    risks: list[str] = []
    if similarity.substantially_identical:
        risks.append(RISK_IDENTICAL)
    if _buys_of(recent, buy_symbol):
        risks.append(RISK_RECENT_BUY)

    return WashSaleComplianceResult(
        is_compliant=not conflicts,
        risk_factors=risks,
        safe_date=safe_transaction_date(sell_symbol, recent, config=config, today=today),
        similarity_assessment=similarity,
        conflicting_transaction_ids=[t.id for t in conflicts],
    )


def check_wash_sale_compliance(
    deps: EngineDeps,
    sell_symbol: str,
    buy_symbol: str,
    transaction_date: dt.date,
    account_id: Optional[int] = None,
    *,
    config: Optional[HarvestConfig] = None,
    today: Optional[dt.date] = None,
) -> WashSaleComplianceResult:
    config = config or HarvestConfig()
    logger.debug("Checking wash sale compliance: %s -> %s on %s", sell_symbol, buy_symbol, transaction_date)
    try:
        sell_symbol = validate_symbol(sell_symbol, field="sell_symbol")
        buy_symbol = validate_symbol(buy_symbol, field="buy_symbol")
        account_id = validate_optional_id(account_id, field="account_id")
    except LotwiseError as e:
        logger.warning("Wash sale compliance check failed: %s", e)
        raise

    window = dt.timedelta(days=config.wash_sale_days)
    recent = deps.store.by_date_range(transaction_date - window, transaction_date + window)
    if account_id is not None:
        recent = [t for t in recent if t.account_id == account_id]
    similarity = assess_similarity(deps.similarity, sell_symbol, buy_symbol, config=config)

    result = check(sell_symbol, buy_symbol, transaction_date, recent, similarity, config=config, today=today)
    logger.debug("Wash sale compliance check complete: %s", "COMPLIANT" if result.is_compliant else "NON-COMPLIANT")
    return result
