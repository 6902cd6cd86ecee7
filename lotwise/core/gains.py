"""
Realized/unrealized gain aggregation on top of FIFO allocation.

Short/long-term split note: each sale's realized gain is spread over its lots in
proportion to quantity (`sale_gain * lot_qty / qty_sold`). When lots in one sale
carry different per-share costs this differs from computing each lot's own gain
(`lot_proceeds - lot_basis`). The proportional split is what the headline totals
use; the per-lot figures are reported alongside on every SaleDetail.
"""

from __future__ import annotations

import datetime as dt
import logging
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Iterable, Optional

from lotwise.core.config import HarvestConfig
from lotwise.core.errors import LotwiseError, NoHoldingsError, NoTransactionsError, NotFoundError
from lotwise.core.lot_allocator import FifoResult, fifo_by_account, holding_period, shortfall_message
from lotwise.core.providers import EngineDeps
from lotwise.core.types import (
    AnnualSummary,
    BatchGainsResult,
    GainsAnalysis,
    HoldingTerm,
    OpenLotRow,
    RealizedSale,
    SaleDetail,
    SymbolGainsRow,
    SymbolInfo,
    TaxLotReport,
    TransactionRecord,
    UnrealizedAnalysis,
    UnrealizedPosition,
)
from lotwise.core.validation import validate_id, validate_optional_id, validate_tax_year
from lotwise.utils.money import dsum, format_usd, safe_divide
from lotwise.utils.time import utc_today, year_bounds

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def proportional_gains(sale: RealizedSale) -> tuple[Decimal, Decimal]:
    total_qty = sale.quantity_sold
    st = ZERO
    lt = ZERO
    for a in sale.allocations:
        share = sale.realized_gain_loss * safe_divide(a.quantity_allocated, total_qty)
        if a.holding_period.classification is HoldingTerm.SHORT_TERM:
            st += share
        else:
            lt += share
    return st, lt


def per_lot_gains(sale: RealizedSale) -> tuple[Decimal, Decimal]:
    sold = abs(sale.sale_transaction.quantity)
    st = ZERO
    lt = ZERO
    for a in sale.allocations:
        lot_proceeds = sale.total_proceeds * safe_divide(a.quantity_allocated, sold)
        gain = lot_proceeds - a.cost_basis
        if a.holding_period.classification is HoldingTerm.SHORT_TERM:
            st += gain
        else:
            lt += gain
    return st, lt


def _sale_detail(sale: RealizedSale) -> SaleDetail:
    st, lt = proportional_gains(sale)
    exact_st, exact_lt = per_lot_gains(sale)
    txn = sale.sale_transaction
    return SaleDetail(
        transaction_id=txn.id,
        sale_date=txn.date,
        quantity_sold=sale.quantity_sold,
        total_proceeds=sale.total_proceeds,
        total_cost_basis=sale.total_cost_basis,
        realized_gain_loss=sale.realized_gain_loss,
        short_term_gain=st,
        long_term_gain=lt,
        per_lot_short_term=exact_st,
        per_lot_long_term=exact_lt,
        lots_used=len(sale.allocations),
        unmatched_quantity=sale.unmatched_quantity,
    )


def aggregate(
    realized_sales: Iterable[RealizedSale],
    tax_year: int,
    *,
    symbol_id: Optional[int] = None,
    symbol: Optional[str] = None,
) -> GainsAnalysis:
    in_year = [s for s in realized_sales if s.sale_transaction.date.year == tax_year]
    details = [_sale_detail(s) for s in in_year]
    short_term = dsum(d.short_term_gain for d in details)
    long_term = dsum(d.long_term_gain for d in details)
    # Only shortfalls inside the reported year make this report partial.
    year_warnings = [shortfall_message(s) for s in in_year if s.is_partial]
    for s in in_year:
        if not s.allocations:
            t = s.sale_transaction
            year_warnings.append(
                f"Sell {t.id} on {t.date.isoformat()} matched no buy lots; "
                f"its {format_usd(s.realized_gain_loss)} realized amount is excluded from the gain totals."
            )
    return GainsAnalysis(
        tax_year=tax_year,
        symbol_id=symbol_id,
        symbol=symbol,
        total_realized_gains=short_term + long_term,
        short_term_gains=short_term,
        long_term_gains=long_term,
        total_proceeds=dsum(s.total_proceeds for s in in_year),
        total_cost_basis=dsum(s.total_cost_basis for s in in_year),
        sales=details,
        transactions_processed=len(in_year),
        warnings=year_warnings,
        is_partial=any(s.is_partial for s in in_year),
    )


def _buy_sell_history(transactions: Iterable[TransactionRecord], account_id: Optional[int] = None) -> list[TransactionRecord]:
    rows = [t for t in transactions if t.is_buy or t.is_sell]
    if account_id is not None:
        rows = [t for t in rows if t.account_id == account_id]
    return sorted(rows, key=lambda t: (t.date, t.id))


def _run_fifo(history: list[TransactionRecord], config: HarvestConfig) -> FifoResult:
    return fifo_by_account(history, long_term_days=config.long_term_days)


def _symbol_label(info: Optional[SymbolInfo], history: list[TransactionRecord]) -> Optional[str]:
    if info is not None:
        return info.symbol
    for t in history:
        if t.symbol:
            return t.symbol
    return None


def _analyze(history: list[TransactionRecord], info: SymbolInfo, tax_year: int, config: HarvestConfig) -> GainsAnalysis:
    result = _run_fifo(history, config)
    return aggregate(result.sales, tax_year, symbol_id=info.id, symbol=info.symbol)


def _load_symbol_history(deps: EngineDeps, symbol_id: int) -> tuple[SymbolInfo, list[TransactionRecord]]:
    history = _buy_sell_history(deps.store.by_symbol(symbol_id))
    info = deps.similarity.get_symbol(symbol_id)
    if info is None:
        raise NotFoundError(f"Unknown symbol id {symbol_id}")
    if not history:
        raise NoTransactionsError(f"No buy/sell transactions for symbol {info.symbol}")
    return info, history


def calculate_realized_gains(
    deps: EngineDeps,
    symbol_id: int,
    tax_year: Optional[int] = None,
    *,
    config: Optional[HarvestConfig] = None,
) -> GainsAnalysis:
    """
    Realized gains for one symbol in one tax year, FIFO cost basis.

    All sells in the history are replayed so that earlier-year sales consume their
    lots; only sales dated in `tax_year` are reported.
    """
    config = config or HarvestConfig()
    logger.debug("Calculating realized gains for symbol %s, tax year %s", symbol_id, tax_year or "current")
    try:
        symbol_id = validate_id(symbol_id, field="symbol_id")
        tax_year = validate_tax_year(tax_year if tax_year is not None else utc_today().year)
        info, history = _load_symbol_history(deps, symbol_id)
    except LotwiseError as e:
        logger.warning("Realized gains calculation failed: %s", e)
        raise

    analysis = _analyze(history, info, tax_year, config)
    logger.debug("Realized gains calculation complete for %s: %s", info.symbol, format_usd(analysis.total_realized_gains))
    return analysis


def calculate_realized_gains_batch(
    deps: EngineDeps,
    symbol_ids: Iterable[int],
    tax_year: Optional[int] = None,
    *,
    config: Optional[HarvestConfig] = None,
    max_workers: int = 4,
) -> BatchGainsResult:
    """
    Realized gains for many symbols. A failing symbol is reported in `failures`
    and does not abort the rest of the batch.

    Store reads happen on the calling thread; only the pure allocation fans out.
    """
    config = config or HarvestConfig()
    tax_year = validate_tax_year(tax_year if tax_year is not None else utc_today().year)
    out = BatchGainsResult(tax_year=tax_year)

    loaded: list[tuple[int, SymbolInfo, list[TransactionRecord]]] = []
    for sid in symbol_ids:
        try:
            sid = validate_id(sid, field="symbol_id")
            info, history = _load_symbol_history(deps, sid)
        except LotwiseError as e:
            logger.warning("Skipping symbol %s in batch: %s", sid, e)
            out.failures[sid] = f"{e.code}: {e}"
            continue
        loaded.append((sid, info, history))

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures = {sid: pool.submit(_analyze, history, info, tax_year, config) for sid, info, history in loaded}
        for sid, fut in futures.items():
            try:
                out.results[sid] = fut.result()
            except (LotwiseError, ValueError) as e:
                logger.warning("Allocation failed for symbol %s: %s", sid, e)
                out.failures[sid] = f"{getattr(e, 'code', 'error')}: {e}"
    return out


def calculate_annual_summary(
    deps: EngineDeps,
    tax_year: int,
    account_id: Optional[int] = None,
    *,
    config: Optional[HarvestConfig] = None,
) -> AnnualSummary:
    config = config or HarvestConfig()
    logger.debug("Calculating annual summary for %s%s", tax_year, f", account {account_id}" if account_id else "")
    try:
        tax_year = validate_tax_year(tax_year)
        account_id = validate_optional_id(account_id, field="account_id")
        start, end = year_bounds(tax_year)
        txns = deps.store.by_date_range(start, end)
        if account_id is not None:
            txns = [t for t in txns if t.account_id == account_id]
        if not txns:
            raise NoTransactionsError(f"No transactions in {tax_year}")
    except LotwiseError as e:
        logger.warning("Annual summary calculation failed: %s", e)
        raise

    sold_symbols: list[int] = []
    for t in sorted(txns, key=lambda t: (t.date, t.id)):
        if t.is_sell and t.symbol_id not in sold_symbols:
            sold_symbols.append(t.symbol_id)

    rows: list[SymbolGainsRow] = []
    warnings: list[str] = []
    partial = False
    for sid in sold_symbols:
        history = _buy_sell_history(deps.store.by_symbol(sid), account_id)
        info = deps.similarity.get_symbol(sid)
        label = _symbol_label(info, history)
        result = _run_fifo(history, config)
        analysis = aggregate(result.sales, tax_year, symbol_id=sid, symbol=label)
        warnings.extend(f"{label or sid}: {w}" for w in analysis.warnings)
        partial = partial or analysis.is_partial
        rows.append(
            SymbolGainsRow(
                symbol_id=sid,
                symbol=label,
                total_proceeds=analysis.total_proceeds,
                total_cost_basis=analysis.total_cost_basis,
                short_term_gains=analysis.short_term_gains,
                long_term_gains=analysis.long_term_gains,
                net_capital_gains=analysis.total_realized_gains,
                sales=analysis.transactions_processed,
            )
        )

    summary = AnnualSummary(
        tax_year=tax_year,
        account_id=account_id,
        total_proceeds=dsum(r.total_proceeds for r in rows),
        total_cost_basis=dsum(r.total_cost_basis for r in rows),
        net_capital_gains=dsum(r.net_capital_gains for r in rows),
        short_term_gains=dsum(r.short_term_gains for r in rows),
        long_term_gains=dsum(r.long_term_gains for r in rows),
        transactions_analyzed=sum(r.sales for r in rows),
        symbols=rows,
        warnings=warnings,
        is_partial=partial,
    )
    logger.debug("Annual summary complete: %s net capital gains", format_usd(summary.net_capital_gains))
    return summary


def calculate_unrealized_gains(
    deps: EngineDeps,
    symbol_id: Optional[int] = None,
    account_id: Optional[int] = None,
) -> UnrealizedAnalysis:
    symbol_id = validate_optional_id(symbol_id, field="symbol_id")
    account_id = validate_optional_id(account_id, field="account_id")
    positions = deps.positions.positions(account_id)
    if symbol_id is not None:
        positions = [p for p in positions if p.symbol_id == symbol_id]
    if not positions:
        logger.info("No holdings found for unrealized gains calculation")
        raise NoHoldingsError("No holdings to analyze")

    rows = [
        UnrealizedPosition(
            symbol_id=p.symbol_id,
            symbol=p.symbol,
            account_id=p.account_id,
            quantity=p.quantity,
            current_value=p.current_value,
            cost_basis=p.cost_basis,
            unrealized_gain=p.unrealized_gain_loss,
        )
        for p in positions
    ]
    return UnrealizedAnalysis(
        total_unrealized_gains=dsum(r.unrealized_gain for r in rows),
        total_current_value=dsum(r.current_value for r in rows),
        total_cost_basis=dsum(r.cost_basis for r in rows),
        positions=rows,
    )


def generate_tax_lot_report(
    deps: EngineDeps,
    account_id: Optional[int] = None,
    as_of: Optional[dt.date] = None,
    *,
    config: Optional[HarvestConfig] = None,
) -> TaxLotReport:
    config = config or HarvestConfig()
    account_id = validate_optional_id(account_id, field="account_id")
    as_of = as_of or utc_today()
    positions = deps.positions.positions(account_id)
    if not positions:
        logger.info("No holdings found for tax lot report")
        raise NoHoldingsError("No holdings to report")

    held: dict[int, str] = {}
    for p in positions:
        held.setdefault(p.symbol_id, p.symbol)

    lots: list[OpenLotRow] = []
    warnings: list[str] = []
    for sid, ticker in held.items():
        history = [t for t in _buy_sell_history(deps.store.by_symbol(sid), account_id) if t.date <= as_of]
        result = _run_fifo(history, config)
        warnings.extend(f"{ticker}: {w}" for w in result.warnings)
        for lot in result.open_lots:
            period = holding_period(lot.purchase_date, as_of, long_term_days=config.long_term_days)
            lots.append(
                OpenLotRow(
                    symbol_id=sid,
                    symbol=ticker,
                    source_transaction_id=lot.source_transaction_id,
                    purchase_date=lot.purchase_date,
                    original_quantity=lot.original_quantity,
                    remaining_quantity=lot.remaining_quantity,
                    cost_per_share=lot.cost_per_share,
                    remaining_cost_basis=lot.remaining_cost,
                    holding_days=period.days,
                    term=period.classification.value,
                )
            )

    logger.debug("Tax lot report generated with %s lots", len(lots))
    return TaxLotReport(
        as_of=as_of,
        account_id=account_id,
        tax_lots=lots,
        summary={
            "total_lots": len(lots),
            "total_positions": len(held),
            "total_cost_basis": dsum(l.remaining_cost_basis for l in lots),
        },
        warnings=warnings,
    )
