"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Mappings held by these models are wrapped read-only at construction.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from uuid import UUID

from credit_engine.models.api import (
    BillingRoute,
    DenialReason,
    LedgerReason,
    Modality,
    ModelCategory,
    ReservationStatus,
    Tier,
    UsageOutcome,
)

# ============================================================================
# Catalog Models
# ============================================================================


@dataclass(frozen=True)
class ModelSpec:
    """Registered model - category, provider and unit pricing."""

    model_id: str
    provider: str
    category: ModelCategory
    modality: Modality = Modality.CHAT
    units_per_block: int = 1000
    credits_per_block: int = 1

    def __post_init__(self) -> None:
        """Validate model pricing."""
        if not self.model_id:
            raise ValueError("model_id cannot be empty")
        if not self.provider:
            raise ValueError(f"provider cannot be empty for {self.model_id}")
        if self.units_per_block <= 0:
            raise ValueError(f"units_per_block must be positive: {self.units_per_block}")
        if self.credits_per_block < 0:
            raise ValueError(f"credits_per_block cannot be negative: {self.credits_per_block}")

    def base_cost(self, units: int) -> int:
        """Credits for `units` before the tier multiplier (partial blocks round up)."""
        if units < 0:
            raise ValueError(f"units cannot be negative: {units}")
        blocks = -(-units // self.units_per_block)
        return blocks * self.credits_per_block


@dataclass(frozen=True)
class TierConfig:
    """Immutable tier definition."""

    tier: Tier
    rank: int
    allowed_models: frozenset[str]
    monthly_credit_allotment: int
    model_cost_multiplier: Mapping[ModelCategory, int]
    personal_key_allowed: bool = False
    features: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Freeze collections and validate limits."""
        object.__setattr__(self, "allowed_models", frozenset(self.allowed_models))
        object.__setattr__(
            self, "model_cost_multiplier", MappingProxyType(dict(self.model_cost_multiplier))
        )
        object.__setattr__(self, "features", tuple(self.features))
        if self.monthly_credit_allotment < 0:
            raise ValueError(
                f"Allotment cannot be negative for {self.tier.value}: "
                f"{self.monthly_credit_allotment}"
            )


@dataclass(frozen=True)
class CreditPack:
    """Purchasable bundle of credits."""

    pack_id: str
    name: str
    credits: int
    price_minor: int

    def __post_init__(self) -> None:
        """Validate pack values."""
        if self.credits <= 0:
            raise ValueError(f"Pack credits must be positive: {self.credits}")
        if self.price_minor < 0:
            raise ValueError(f"Pack price cannot be negative: {self.price_minor}")


@dataclass(frozen=True)
class TierUpgrade:
    """Next tier up and what it adds."""

    current_tier: Tier
    next_tier: Tier
    additional_credits: int
    unlocked_models: tuple[str, ...]
    unlocks_personal_keys: bool


# ============================================================================
# Account Models (owned by the identity service)
# ============================================================================


@dataclass(frozen=True)
class KeyHandle:
    """Reference to a personal provider API key - never the key itself."""

    provider: str
    key_id: str
    active: bool = True
    validated: bool = True

    @property
    def usable(self) -> bool:
        """Only active, validated keys can carry a request."""
        return self.active and self.validated


@dataclass(frozen=True)
class AccountProfile:
    """What the engine reads about an account: tier and personal keys."""

    account_id: str
    tier: str
    personal_keys: Mapping[str, KeyHandle] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate and freeze."""
        if not self.account_id:
            raise ValueError("account_id cannot be empty")
        object.__setattr__(self, "personal_keys", MappingProxyType(dict(self.personal_keys)))

    def has_usable_key(self, provider: str) -> bool:
        """Check for an active, validated key for a provider."""
        handle = self.personal_keys.get(provider)
        return handle is not None and handle.usable


# ============================================================================
# Ledger Models
# ============================================================================


@dataclass(frozen=True)
class LedgerChange:
    """Planned balance change, computed from the balance under lock."""

    delta: int
    reason: LedgerReason
    related_usage_id: str | None = None
    description: str | None = None
    cycle_start: datetime | None = None


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry after persistence."""

    entry_id: UUID
    account_id: str
    delta: int
    reason: LedgerReason
    resulting_balance: int
    idempotency_key: str
    related_usage_id: str | None
    description: str | None
    created_at: datetime


@dataclass(frozen=True)
class AppliedEntry:
    """Result of a ledger write - `replayed` is True for idempotent repeats."""

    entry: LedgerEntryData
    replayed: bool


# ============================================================================
# Usage Models
# ============================================================================


@dataclass(frozen=True)
class UsageRecordData:
    """Immutable usage record - one per completed request."""

    usage_id: str
    account_id: str
    model_id: str
    input_units: int
    output_units: int
    computed_cost: int
    billing_route: BillingRoute
    outcome: UsageOutcome
    created_at: datetime
    estimated_cost: int = 0
    shortfall: int = 0
    related_ledger_entry_id: UUID | None = None

    def __post_init__(self) -> None:
        """Validate record constraints."""
        if self.billing_route == BillingRoute.DENIED:
            raise ValueError("Denied requests never produce usage records")
        if self.billing_route == BillingRoute.PERSONAL_KEY and (
            self.related_ledger_entry_id is not None
        ):
            raise ValueError("Personal-key usage cannot reference a ledger entry")
        if self.input_units < 0 or self.output_units < 0:
            raise ValueError("Usage units cannot be negative")
        if self.computed_cost < 0:
            raise ValueError(f"Computed cost cannot be negative: {self.computed_cost}")
        if self.shortfall < 0:
            raise ValueError(f"Shortfall cannot be negative: {self.shortfall}")


@dataclass(frozen=True)
class ModelUsageAggregate:
    """Usage totals for one model."""

    model_id: str
    requests: int
    input_units: int
    output_units: int
    total_cost: int


@dataclass(frozen=True)
class UsageSummary:
    """Usage analytics for one account over a window."""

    account_id: str
    since: datetime
    requests: int
    total_cost: int
    total_input_units: int
    total_output_units: int
    by_model: tuple[ModelUsageAggregate, ...]
    platform_requests: int
    personal_key_requests: int


# ============================================================================
# Routing Models
# ============================================================================


@dataclass(frozen=True)
class Reservation:
    """Persisted pending request carrying a decision from evaluate to reconcile."""

    usage_id: str
    account_id: str
    tier: str
    model_id: str
    route: BillingRoute
    estimated_units: int
    estimated_cost: int
    status: ReservationStatus
    created_at: datetime
    updated_at: datetime
    debit_entry_id: UUID | None = None

    def transition(
        self,
        status: ReservationStatus,
        at: datetime,
        debit_entry_id: UUID | None = None,
    ) -> "Reservation":
        """Return a copy in a new status."""
        return replace(
            self,
            status=status,
            updated_at=at,
            debit_entry_id=debit_entry_id if debit_entry_id is not None else self.debit_entry_id,
        )


@dataclass(frozen=True)
class BillingDecision:
    """Transient decision for one request - never stored."""

    allowed: bool
    route: BillingRoute
    usage_id: str
    estimated_cost: int = 0
    reason: DenialReason | None = None
    message: str | None = None
    available: int | None = None
    required: int | None = None
    required_tier: str | None = None
    retryable: bool = False

    @classmethod
    def approve(cls, usage_id: str, route: BillingRoute, estimated_cost: int) -> "BillingDecision":
        """Build an approved decision."""
        return cls(allowed=True, route=route, usage_id=usage_id, estimated_cost=estimated_cost)

    @classmethod
    def deny(
        cls,
        usage_id: str,
        reason: DenialReason,
        message: str,
        estimated_cost: int = 0,
        available: int | None = None,
        required: int | None = None,
        required_tier: str | None = None,
        retryable: bool = False,
    ) -> "BillingDecision":
        """Build a denied decision."""
        return cls(
            allowed=False,
            route=BillingRoute.DENIED,
            usage_id=usage_id,
            estimated_cost=estimated_cost,
            reason=reason,
            message=message,
            available=available,
            required=required,
            required_tier=required_tier,
            retryable=retryable,
        )


# ============================================================================
# Billing Cycle Models
# ============================================================================


@dataclass(frozen=True)
class CycleResetReport:
    """Outcome of one billing-cycle reset run."""

    cycle_start: datetime
    reset: tuple[str, ...]
    failed: tuple[str, ...]
