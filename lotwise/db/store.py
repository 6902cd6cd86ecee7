"""SQLAlchemy-backed collaborators for the engine (transactions, holdings, similarity)."""

from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from lotwise.core.errors import LotwiseError
from lotwise.core.lot_allocator import fifo_by_account
from lotwise.core.types import Position, SymbolInfo, TransactionKind, TransactionRecord
from lotwise.db.models import Security, Transaction
from lotwise.utils.money import dsum, to_decimal

logger = logging.getLogger(__name__)

SCORE_SAME_TICKER = Decimal("1")
SCORE_SAME_GROUP = Decimal("0.95")
SCORE_SAME_ASSET_CLASS = Decimal("0.3")
SCORE_UNRELATED = Decimal("0.1")


def _dec(v: Any) -> Decimal:
    if v is None:
        return Decimal("0")
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def to_record(tx: Transaction, ticker: Optional[str] = None) -> TransactionRecord:
    return TransactionRecord(
        id=tx.id,
        account_id=tx.account_id,
        symbol_id=tx.security_id,
        kind=TransactionKind.parse(tx.type),
        quantity=_dec(tx.qty),
        price=_dec(tx.price),
        total_amount=_dec(tx.total_amount),
        date=tx.date,
        symbol=ticker if ticker is not None else (tx.security.ticker if tx.security is not None else None),
    )


def to_symbol_info(sec: Security) -> SymbolInfo:
    return SymbolInfo(
        id=sec.id,
        symbol=sec.ticker,
        name=sec.name,
        asset_class=sec.asset_class,
        expense_ratio=_dec(sec.expense_ratio),
        metadata=dict(sec.metadata_json or {}),
    )


class SqlTransactionStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def by_symbol(self, symbol_id: int) -> list[TransactionRecord]:
        rows = (
            self.session.query(Transaction, Security.ticker)
            .join(Security, Security.id == Transaction.security_id)
            .filter(Transaction.security_id == symbol_id)
            .order_by(Transaction.date.asc(), Transaction.id.asc())
            .all()
        )
        return [to_record(tx, ticker) for tx, ticker in rows]

    def by_date_range(self, start: dt.date, end: dt.date) -> list[TransactionRecord]:
        rows = (
            self.session.query(Transaction, Security.ticker)
            .join(Security, Security.id == Transaction.security_id)
            .filter(Transaction.date >= start, Transaction.date <= end)
            .order_by(Transaction.date.asc(), Transaction.id.asc())
            .all()
        )
        return [to_record(tx, ticker) for tx, ticker in rows]


class SqlPositionProvider:
    """
    Current holdings derived from FIFO open lots, valued at `metadata_json["last_price"]`.

    Symbols without a usable price are skipped with a warning.
    """

    def __init__(self, session: Session, *, store: Optional[SqlTransactionStore] = None) -> None:
        self.session = session
        self.store = store or SqlTransactionStore(session)

    def positions(self, account_id: Optional[int] = None) -> list[Position]:
        q = self.session.query(Security).join(Transaction, Transaction.security_id == Security.id)
        if account_id is not None:
            q = q.filter(Transaction.account_id == account_id)
        securities = q.distinct().order_by(Security.ticker.asc()).all()

        out: list[Position] = []
        for sec in securities:
            history = self.store.by_symbol(sec.id)
            if account_id is not None:
                history = [t for t in history if t.account_id == account_id]
            open_lots = fifo_by_account(history).open_lots
            qty = dsum(l.remaining_quantity for l in open_lots)
            if qty <= 0:
                continue
            raw_price = (sec.metadata_json or {}).get("last_price")
            try:
                price = to_decimal(str(raw_price), field="last_price") if raw_price is not None else None
            except LotwiseError:
                price = None
            if price is None:
                logger.warning("No last_price for %s; position skipped", sec.ticker)
                continue
            basis = dsum(l.remaining_cost for l in open_lots)
            value = qty * price
            out.append(
                Position(
                    symbol_id=sec.id,
                    symbol=sec.ticker,
                    current_value=value,
                    cost_basis=basis,
                    unrealized_gain_loss=value - basis,
                    quantity=qty,
                    account_id=account_id,
                    asset_class=sec.asset_class,
                )
            )
        return out


class SqlSimilarityProvider:
    def __init__(self, session: Session, *, limit: int = 5) -> None:
        self.session = session
        self.limit = limit

    def _by_ticker(self, ticker: str) -> Optional[Security]:
        t = ticker.strip().upper()
        return self.session.query(Security).filter(Security.ticker == t).one_or_none()

    def get_symbol(self, symbol_id: int) -> Optional[SymbolInfo]:
        sec = self.session.get(Security, symbol_id)
        return to_symbol_info(sec) if sec is not None else None

    def find_symbol(self, ticker: str) -> Optional[SymbolInfo]:
        sec = self._by_ticker(ticker)
        return to_symbol_info(sec) if sec is not None else None

    def similarity_score(self, ticker_a: str, ticker_b: str) -> Decimal:
        a = ticker_a.strip().upper()
        b = ticker_b.strip().upper()
        if a == b:
            return SCORE_SAME_TICKER
        sa = self._by_ticker(a)
        sb = self._by_ticker(b)
        if sa is None or sb is None:
            return SCORE_UNRELATED
        if sa.substitute_group_id is not None and sa.substitute_group_id == sb.substitute_group_id:
            return SCORE_SAME_GROUP
        if sa.asset_class == sb.asset_class:
            return SCORE_SAME_ASSET_CLASS
        return SCORE_UNRELATED

    def similar_assets(self, ticker: str) -> list[str]:
        sale_sec = self._by_ticker(ticker)
        if sale_sec is None:
            return []
        candidates = []
        for sec in self.session.query(Security).filter(Security.asset_class == sale_sec.asset_class).all():
            if sec.id == sale_sec.id:
                continue
            if sale_sec.substitute_group_id is not None and sec.substitute_group_id == sale_sec.substitute_group_id:
                continue
            candidates.append(sec)
        candidates.sort(key=lambda s: (_dec(s.expense_ratio), s.ticker))
        return [c.ticker for c in candidates[: self.limit]]
