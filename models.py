from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("type", "name", name="uq_category_type_name"),
    )


class Property(Base, TimestampMixin):
    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(255))
    purchase_price_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    market_value_cents: Mapped[Optional[int]] = mapped_column(Integer)
    rent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="property"
    )

    @property
    def effective_market_value_cents(self) -> int:
        if self.market_value_cents:
            return self.market_value_cents
        return self.purchase_price_cents or 0

    __table_args__ = (
        Index("ix_properties_user_deleted", "user_id", "deleted_at"),
        CheckConstraint(
            "purchase_price_cents >= 0", name="ck_properties_purchase_price_positive"
        ),
        CheckConstraint("rent_cents >= 0", name="ck_properties_rent_positive"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id"), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    property: Mapped["Property"] = relationship(
        "Property", back_populates="transactions"
    )
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "transaction_date"),
        Index(
            "ix_transactions_property_date",
            "user_id",
            "property_id",
            "transaction_date",
        ),
        Index("ix_transactions_user_type_date", "user_id", "type", "transaction_date"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class MonthlyMetric(Base, TimestampMixin):
    __tablename__ = "monthly_metrics"

    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id"), primary_key=True
    )
    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    total_income_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_expenses_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    cash_flow_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    property: Mapped["Property"] = relationship("Property")

    __table_args__ = (
        Index("ix_monthly_metrics_user_period", "user_id", "year", "month"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_monthly_metrics_month"),
    )
