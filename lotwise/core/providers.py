from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Optional, Protocol

from lotwise.core.types import Position, SymbolInfo, TransactionRecord

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


class TransactionStore(Protocol):
    def by_symbol(self, symbol_id: int) -> list[TransactionRecord]: ...

    def by_date_range(self, start: dt.date, end: dt.date) -> list[TransactionRecord]: ...


class PositionProvider(Protocol):
    def positions(self, account_id: Optional[int] = None) -> list[Position]: ...


class SimilarityProvider(Protocol):
    def get_symbol(self, symbol_id: int) -> Optional[SymbolInfo]: ...

    def find_symbol(self, ticker: str) -> Optional[SymbolInfo]: ...

    def similarity_score(self, ticker_a: str, ticker_b: str) -> Decimal: ...

    def similar_assets(self, ticker: str) -> list[str]: ...


@dataclass(frozen=True)
class EngineDeps:
    store: TransactionStore
    positions: PositionProvider
    similarity: SimilarityProvider

    @classmethod
    def from_session(cls, session: "Session") -> "EngineDeps":
        from lotwise.db.store import SqlPositionProvider, SqlSimilarityProvider, SqlTransactionStore

        store = SqlTransactionStore(session)
        return cls(
            store=store,
            positions=SqlPositionProvider(session, store=store),
            similarity=SqlSimilarityProvider(session),
        )


class InMemoryTransactionStore:
    def __init__(self, transactions: Iterable[TransactionRecord] = ()) -> None:
        self._txns = list(transactions)

    def add(self, txn: TransactionRecord) -> None:
        self._txns.append(txn)

    def by_symbol(self, symbol_id: int) -> list[TransactionRecord]:
        rows = [t for t in self._txns if t.symbol_id == symbol_id]
        return sorted(rows, key=lambda t: (t.date, t.id))

    def by_date_range(self, start: dt.date, end: dt.date) -> list[TransactionRecord]:
        rows = [t for t in self._txns if start <= t.date <= end]
        return sorted(rows, key=lambda t: (t.date, t.id))


class StaticPositionProvider:
    def __init__(self, positions: Iterable[Position] = ()) -> None:
        self._positions = list(positions)

    def positions(self, account_id: Optional[int] = None) -> list[Position]:
        if account_id is None:
            return list(self._positions)
        return [p for p in self._positions if p.account_id == account_id]


@dataclass
class StaticSimilarityProvider:
    """Table-driven similarity: explicit pair scores, a substitutes map and a symbol catalog."""

    symbols: dict[str, SymbolInfo] = field(default_factory=dict)
    pair_scores: dict[tuple[str, str], Decimal] = field(default_factory=dict)
    substitutes: dict[str, list[str]] = field(default_factory=dict)
    default_score: Decimal = Decimal("0.1")

    def get_symbol(self, symbol_id: int) -> Optional[SymbolInfo]:
        for info in self.symbols.values():
            if info.id == symbol_id:
                return info
        return None

    def find_symbol(self, ticker: str) -> Optional[SymbolInfo]:
        return self.symbols.get(ticker.strip().upper())

    def similarity_score(self, ticker_a: str, ticker_b: str) -> Decimal:
        a = ticker_a.strip().upper()
        b = ticker_b.strip().upper()
        if a == b:
            return Decimal("1")
        score = self.pair_scores.get((a, b))
        if score is None:
            score = self.pair_scores.get((b, a))
        return self.default_score if score is None else score

    def similar_assets(self, ticker: str) -> list[str]:
        return list(self.substitutes.get(ticker.strip().upper(), []))
