from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

try:
    from sqlalchemy import JSON, Date, Enum, ForeignKey, Index, Integer, String, Text
    from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
except ImportError as e:  # pragma: no cover
    raise RuntimeError(
        "Failed to import SQLAlchemy.\n\n"
        "Create a virtualenv and install the project:\n"
        "  python -m venv .venv\n"
        "  source .venv/bin/activate\n"
        "  pip install -e .\n\n"
        f"Original error: {type(e).__name__}: {e}"
    ) from e

from lotwise.db.types import ExactDecimal, UTCDateTime
from lotwise.utils.time import utcnow


class Base(DeclarativeBase):
    pass


AccountType = Enum("TAXABLE", "IRA", "OTHER", name="account_type")
TxnType = Enum("BUY", "SELL", "DIVIDEND", "FEE", "INTEREST", name="txn_type")


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    account_type: Mapped[str] = mapped_column(AccountType, nullable=False, default="TAXABLE")

    transactions: Mapped[list["Transaction"]] = relationship(back_populates="account")


class SubstituteGroup(Base):
    """Securities in one group are treated as substantially identical."""

    __tablename__ = "substitute_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    securities: Mapped[list["Security"]] = relationship(back_populates="substitute_group")


class Security(Base):
    __tablename__ = "securities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticker: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    asset_class: Mapped[str] = mapped_column(String(64), nullable=False, default="UNKNOWN")
    expense_ratio: Mapped[Decimal] = mapped_column(ExactDecimal(), default=Decimal("0"), nullable=False)
    substitute_group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("substitute_groups.id"))
    # last_price, correlation, liquidity_score, tax_efficiency (all decimal strings)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    substitute_group: Mapped[Optional["SubstituteGroup"]] = relationship(back_populates="securities")
    transactions: Mapped[list["Transaction"]] = relationship(back_populates="security")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_security_date", "security_id", "date"),
        Index("ix_transactions_date", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    security_id: Mapped[int] = mapped_column(ForeignKey("securities.id"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    type: Mapped[str] = mapped_column(TxnType, nullable=False)
    qty: Mapped[Decimal] = mapped_column(ExactDecimal(), nullable=False)  # signed; sells negative
    price: Mapped[Decimal] = mapped_column(ExactDecimal(), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(ExactDecimal(), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    account: Mapped["Account"] = relationship(back_populates="transactions")
    security: Mapped["Security"] = relationship(back_populates="transactions")


class HarvestSettingsSet(Base):
    __tablename__ = "harvest_settings_sets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    effective_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    json_definition: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
