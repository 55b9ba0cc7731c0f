"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Column types are dialect-neutral (Uuid, String) so the same tables run on
PostgreSQL in production and SQLite in tests.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class CreditAccount(Base):
    """
    ORM model for credit_accounts table.

    Running balance per account - the row locked by every ledger write.
    Balances may go negative only through reconciliation overdrafts.
    """

    __tablename__ = "credit_accounts"

    account_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Start of the last applied billing cycle (None until the first reset)
    cycle_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index("idx_credit_accounts_cycle_start", "cycle_start"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<CreditAccount(account_id={self.account_id}, balance={self.balance})>"


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Append-only history of every balance change.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("credit_accounts.account_id", name="fk_ledger_entries_account", ondelete="RESTRICT"),
        nullable=False,
    )

    delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    resulting_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)

    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    related_usage_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "reason IN ('purchase', 'ai_usage', 'refund', 'monthly_reset')",
            name="ck_ledger_entry_reason",
        ),
        UniqueConstraint("account_id", "idempotency_key", name="uq_ledger_entry_idempotency"),
        Index("idx_ledger_entries_account_created", "account_id", "created_at"),
        Index("idx_ledger_entries_related_usage", "related_usage_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, account_id={self.account_id}, "
            f"delta={self.delta}, resulting_balance={self.resulting_balance})>"
        )


class UsageRecord(Base):
    """
    ORM model for usage_records table.

    One immutable row per completed request.
    """

    __tablename__ = "usage_records"

    usage_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    model_id: Mapped[str] = mapped_column(String(255), nullable=False)

    input_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    output_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    computed_cost: Mapped[int] = mapped_column(BigInteger, nullable=False)
    estimated_cost: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shortfall: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    billing_route: Mapped[str] = mapped_column(String(32), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    related_ledger_entry_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("ledger_entries.id", name="fk_usage_records_ledger_entry", ondelete="RESTRICT"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "billing_route IN ('platform_credits', 'personal_key')",
            name="ck_usage_record_route",
        ),
        CheckConstraint(
            "billing_route = 'platform_credits' OR related_ledger_entry_id IS NULL",
            name="ck_usage_record_personal_key_no_ledger",
        ),
        CheckConstraint("computed_cost >= 0", name="ck_usage_record_cost_non_negative"),
        Index("idx_usage_records_account_created", "account_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UsageRecord(usage_id={self.usage_id}, account_id={self.account_id}, "
            f"model_id={self.model_id}, computed_cost={self.computed_cost})>"
        )


class BillingReservation(Base):
    """
    ORM model for billing_reservations table.

    Carries an approved decision from evaluate to reconcile.
    """

    __tablename__ = "billing_reservations"

    usage_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tier: Mapped[str] = mapped_column(String(50), nullable=False)
    model_id: Mapped[str] = mapped_column(String(255), nullable=False)
    route: Mapped[str] = mapped_column(String(32), nullable=False)

    estimated_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    estimated_cost: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    debit_entry_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'denied', 'reconciled', 'void')",
            name="ck_billing_reservation_status",
        ),
        Index("idx_billing_reservations_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<BillingReservation(usage_id={self.usage_id}, status={self.status})>"
