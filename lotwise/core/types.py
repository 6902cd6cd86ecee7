from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from lotwise.core.errors import InvalidArgumentsError

ZERO = Decimal("0")


class TransactionKind(enum.Enum):
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"
    FEE = "FEE"
    INTEREST = "INTEREST"

    @classmethod
    def parse(cls, value: Any) -> "TransactionKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise InvalidArgumentsError(f"Unknown transaction kind: {value!r}") from None


class HoldingTerm(enum.Enum):
    SHORT_TERM = "ST"
    LONG_TERM = "LT"


@dataclass(frozen=True)
class TransactionRecord:
    id: int
    account_id: int
    symbol_id: int
    kind: TransactionKind
    quantity: Decimal  # signed; sells are negative
    price: Decimal
    total_amount: Decimal
    date: dt.date
    symbol: Optional[str] = None

    @property
    def is_buy(self) -> bool:
        return self.kind is TransactionKind.BUY

    @property
    def is_sell(self) -> bool:
        return self.kind is TransactionKind.SELL


@dataclass
class TaxLot:
    source_transaction_id: int
    purchase_date: dt.date
    original_quantity: Decimal
    remaining_quantity: Decimal
    cost_per_share: Decimal
    total_cost: Decimal
    consumed_cost: Decimal = ZERO

    @classmethod
    def from_buy(cls, txn: TransactionRecord) -> "TaxLot":
        qty = abs(txn.quantity)
        return cls(
            source_transaction_id=txn.id,
            purchase_date=txn.date,
            original_quantity=qty,
            remaining_quantity=qty,
            cost_per_share=txn.price,
            total_cost=abs(txn.total_amount),
        )

    @property
    def remaining_cost(self) -> Decimal:
        return self.total_cost - self.consumed_cost

    def prorated_cost(self, quantity: Decimal) -> Decimal:
        if self.original_quantity == 0:
            return ZERO
        return self.total_cost * (quantity / self.original_quantity)

    def consume(self, quantity: Decimal) -> Decimal:
        """Take `quantity` off the lot and return the basis that goes with it.

        Emptying the lot takes whatever basis is left, so the pieces of one lot
        always add back up to its total cost.
        """
        if quantity < 0 or quantity > self.remaining_quantity:
            raise ValueError(
                f"Cannot consume {quantity} from lot {self.source_transaction_id} "
                f"with {self.remaining_quantity} remaining"
            )
        cost = self.remaining_cost if quantity == self.remaining_quantity else self.prorated_cost(quantity)
        self.remaining_quantity -= quantity
        self.consumed_cost += cost
        return cost

    def snapshot(self) -> "TaxLot":
        return TaxLot(
            source_transaction_id=self.source_transaction_id,
            purchase_date=self.purchase_date,
            original_quantity=self.original_quantity,
            remaining_quantity=self.remaining_quantity,
            cost_per_share=self.cost_per_share,
            total_cost=self.total_cost,
            consumed_cost=self.consumed_cost,
        )


@dataclass(frozen=True)
class HoldingPeriod:
    days: int
    classification: HoldingTerm

    @property
    def is_long_term(self) -> bool:
        return self.classification is HoldingTerm.LONG_TERM


@dataclass(frozen=True)
class LotAllocation:
    tax_lot: TaxLot  # state of the lot before this allocation
    quantity_allocated: Decimal
    cost_basis: Decimal
    holding_period: HoldingPeriod


@dataclass(frozen=True)
class RealizedSale:
    sale_transaction: TransactionRecord
    allocations: tuple[LotAllocation, ...]
    total_proceeds: Decimal
    total_cost_basis: Decimal
    realized_gain_loss: Decimal
    unmatched_quantity: Decimal = ZERO

    @property
    def quantity_sold(self) -> Decimal:
        return sum((a.quantity_allocated for a in self.allocations), ZERO)

    @property
    def is_partial(self) -> bool:
        return self.unmatched_quantity > 0


@dataclass(frozen=True)
class Position:
    symbol_id: int
    symbol: str
    current_value: Decimal
    cost_basis: Decimal
    unrealized_gain_loss: Decimal
    quantity: Decimal = ZERO
    account_id: Optional[int] = None
    asset_class: Optional[str] = None


@dataclass(frozen=True)
class SymbolInfo:
    id: int
    symbol: str
    name: str = ""
    asset_class: str = "UNKNOWN"
    expense_ratio: Decimal = ZERO
    metadata: dict[str, Any] = field(default_factory=dict)


# Reports


class SaleDetail(BaseModel):
    transaction_id: int
    sale_date: dt.date
    quantity_sold: Decimal
    total_proceeds: Decimal
    total_cost_basis: Decimal
    realized_gain_loss: Decimal
    short_term_gain: Decimal
    long_term_gain: Decimal
    per_lot_short_term: Decimal
    per_lot_long_term: Decimal
    lots_used: int
    unmatched_quantity: Decimal = ZERO


class GainsAnalysis(BaseModel):
    tax_year: int
    symbol_id: Optional[int] = None
    symbol: Optional[str] = None
    total_realized_gains: Decimal = ZERO
    short_term_gains: Decimal = ZERO
    long_term_gains: Decimal = ZERO
    total_proceeds: Decimal = ZERO
    total_cost_basis: Decimal = ZERO
    sales: list[SaleDetail] = Field(default_factory=list)
    transactions_processed: int = 0
    warnings: list[str] = Field(default_factory=list)
    is_partial: bool = False


class BatchGainsResult(BaseModel):
    tax_year: int
    results: dict[int, GainsAnalysis] = Field(default_factory=dict)
    failures: dict[int, str] = Field(default_factory=dict)


class SymbolGainsRow(BaseModel):
    symbol_id: int
    symbol: Optional[str] = None
    total_proceeds: Decimal
    total_cost_basis: Decimal
    short_term_gains: Decimal
    long_term_gains: Decimal
    net_capital_gains: Decimal
    sales: int


class AnnualSummary(BaseModel):
    tax_year: int
    account_id: Optional[int] = None
    total_proceeds: Decimal = ZERO
    total_cost_basis: Decimal = ZERO
    net_capital_gains: Decimal = ZERO
    short_term_gains: Decimal = ZERO
    long_term_gains: Decimal = ZERO
    transactions_analyzed: int = 0
    symbols: list[SymbolGainsRow] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    is_partial: bool = False


class UnrealizedPosition(BaseModel):
    symbol_id: int
    symbol: str
    account_id: Optional[int] = None
    quantity: Decimal
    current_value: Decimal
    cost_basis: Decimal
    unrealized_gain: Decimal


class UnrealizedAnalysis(BaseModel):
    total_unrealized_gains: Decimal
    total_current_value: Decimal
    total_cost_basis: Decimal
    positions: list[UnrealizedPosition]


class OpenLotRow(BaseModel):
    symbol_id: int
    symbol: str
    source_transaction_id: int
    purchase_date: dt.date
    original_quantity: Decimal
    remaining_quantity: Decimal
    cost_per_share: Decimal
    remaining_cost_basis: Decimal
    holding_days: int
    term: Literal["ST", "LT"]


class TaxLotReport(BaseModel):
    as_of: dt.date
    account_id: Optional[int] = None
    tax_lots: list[OpenLotRow]
    summary: dict[str, Any]
    warnings: list[str] = Field(default_factory=list)


class SimilarityAssessment(BaseModel):
    similarity_score: Decimal
    substantially_identical: bool


class WashSaleComplianceResult(BaseModel):
    is_compliant: bool
    risk_factors: list[str]
    safe_date: dt.date
    similarity_assessment: SimilarityAssessment
    conflicting_transaction_ids: list[int] = Field(default_factory=list)


class HarvestOpportunity(BaseModel):
    symbol_id: int
    symbol: str
    current_value: Decimal
    cost_basis: Decimal
    unrealized_loss: Decimal  # positive magnitude
    tax_benefit: Decimal
    wash_sale_risk: bool
    harvestable: bool = True
    replacement_options: list[str] = Field(default_factory=list)
    priority_score: Decimal
    asset_class: Optional[str] = None


class HarvestReport(BaseModel):
    opportunities: list[HarvestOpportunity]
    total_harvestable_losses: Decimal
    estimated_tax_savings: Decimal
    positions_analyzed: int
    opportunities_found: int


class Replacement(BaseModel):
    symbol: str
    suitability_score: Decimal
    correlation_to_original: Decimal
    expense_ratio: Decimal
    liquidity_score: Decimal
    tax_efficiency: Decimal
    allocation_target: Optional[Decimal] = None


class HarvestAction(BaseModel):
    action_type: Literal["tax_loss_harvest"] = "tax_loss_harvest"
    sell_symbol: str
    sell_amount: Decimal
    estimated_loss: Decimal
    estimated_tax_savings: Decimal
    recommended_replacement: Optional[str] = None
    priority: Decimal
    wash_sale_compliant: bool
    execution_date: dt.date


class ExecutionTimeline(BaseModel):
    immediate_actions: int
    delayed_actions: int
    earliest_completion: dt.date


class HarvestStrategy(BaseModel):
    actions: list[HarvestAction]
    total_estimated_savings: Decimal
    execution_timeline: ExecutionTimeline
    current_allocations: dict[str, Decimal] = Field(default_factory=dict)
    allocation_drift: dict[str, Decimal] = Field(default_factory=dict)
    risk_assessment: Literal["Low", "Elevated"] = "Low"
    compliance_verified: bool = True
