"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class Tier(str, Enum):
    """Subscription tier enumeration."""

    ENTRY = "entry"
    PROFESSIONAL = "professional"
    BUSINESS = "business"
    PREMIUM = "premium"


class ModelCategory(str, Enum):
    """Model cost category - determines the credit multiplier."""

    BASE = "base"
    ADVANCED = "advanced"
    PREMIUM = "premium"


class Modality(str, Enum):
    """Kind of content a model generates."""

    CHAT = "chat"
    IMAGE = "image"
    VIDEO = "video"


class LedgerReason(str, Enum):
    """Ledger entry reason enumeration."""

    PURCHASE = "purchase"
    AI_USAGE = "ai_usage"
    REFUND = "refund"
    MONTHLY_RESET = "monthly_reset"


class BillingRoute(str, Enum):
    """Who pays for a request."""

    PLATFORM_CREDITS = "platform_credits"
    PERSONAL_KEY = "personal_key"
    DENIED = "denied"


class DenialReason(str, Enum):
    """Why a billing decision was denied."""

    MODEL_NOT_IN_TIER = "model_not_in_tier"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    UNKNOWN_MODEL = "unknown_model"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    ACCOUNT_NOT_FOUND = "account_not_found"
    IDENTITY_UNAVAILABLE = "identity_unavailable"
    RESERVATION_RELEASED = "reservation_released"


class UsageOutcome(str, Enum):
    """Result of the upstream provider call as reported by the orchestrator."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class ReservationStatus(str, Enum):
    """Lifecycle of a billing reservation."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    RECONCILED = "reconciled"
    VOID = "void"


# ============================================================================
# Billing Decision Models
# ============================================================================


class EvaluateRequest(BaseModel):
    """POST /v1/billing/evaluate request body."""

    account_id: str = Field(..., min_length=1, max_length=255)
    model_id: str = Field(..., min_length=1, max_length=255)
    estimated_units: int = Field(..., ge=0)
    usage_id: str | None = Field(
        None,
        min_length=1,
        max_length=255,
        description="Caller-supplied request ID; retries with the same ID are idempotent",
    )


class BillingDecisionResponse(BaseModel):
    """Billing decision returned by POST /v1/billing/evaluate."""

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


class ReconcileRequest(BaseModel):
    """POST /v1/billing/reconcile request body."""

    usage_id: str = Field(..., min_length=1, max_length=255)
    actual_input_units: int = Field(..., ge=0)
    actual_output_units: int = Field(..., ge=0)
    outcome: UsageOutcome
    bill_partial: bool | None = Field(
        None, description="Bill partial completions; defaults to BILL_PARTIAL_OUTPUT"
    )


class CancelRequest(BaseModel):
    """POST /v1/billing/cancel request body."""

    usage_id: str = Field(..., min_length=1, max_length=255)


class UsageRecordResponse(BaseModel):
    """Usage record returned after reconciliation."""

    usage_id: str
    account_id: str
    model_id: str
    input_units: int
    output_units: int
    computed_cost: int
    estimated_cost: int
    shortfall: int
    billing_route: BillingRoute
    outcome: UsageOutcome
    related_ledger_entry_id: UUID | None = None
    created_at: str  # ISO 8601 timestamp


# ============================================================================
# Account / Ledger Models
# ============================================================================


class BalanceResponse(BaseModel):
    """GET /v1/accounts/{account_id}/balance response."""

    account_id: str
    balance: int


class LedgerEntryResponse(BaseModel):
    """Single ledger entry."""

    entry_id: UUID
    account_id: str
    delta: int
    reason: LedgerReason
    resulting_balance: int
    related_usage_id: str | None = None
    description: str | None = None
    created_at: str  # ISO 8601 timestamp


class LedgerHistoryResponse(BaseModel):
    """GET /v1/accounts/{account_id}/ledger response."""

    account_id: str
    balance: int
    entries: list[LedgerEntryResponse]


class AddCreditsRequest(BaseModel):
    """POST /v1/accounts/{account_id}/credits request body."""

    reason: LedgerReason = LedgerReason.PURCHASE
    pack_id: str | None = Field(None, min_length=1, max_length=100)
    amount: int | None = Field(None, gt=0)
    idempotency_key: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=500)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: LedgerReason) -> LedgerReason:
        """Only purchases and refunds can be credited through the API."""
        if v not in (LedgerReason.PURCHASE, LedgerReason.REFUND):
            raise ValueError("reason must be purchase or refund")
        return v

    @model_validator(mode="after")
    def validate_amount_source(self) -> "AddCreditsRequest":
        """Exactly one of pack_id and amount must be given."""
        if (self.pack_id is None) == (self.amount is None):
            raise ValueError("Provide exactly one of pack_id or amount")
        return self


class CycleResetRequest(BaseModel):
    """POST /v1/accounts/{account_id}/cycle-reset request body."""

    cycle: str | None = Field(
        None, description="Billing cycle as YYYY-MM; defaults to the current month"
    )

    @field_validator("cycle")
    @classmethod
    def validate_cycle(cls, v: str | None) -> str | None:
        """Ensure cycle looks like YYYY-MM."""
        if v is None:
            return v
        parts = v.split("-")
        if [len(p) for p in parts] != [4, 2] or not all(p.isdigit() for p in parts):
            raise ValueError("cycle must be formatted as YYYY-MM")
        if not 1 <= int(parts[1]) <= 12:
            raise ValueError("cycle month must be between 01 and 12")
        return v


# ============================================================================
# Usage Analytics Models
# ============================================================================


class ModelUsageResponse(BaseModel):
    """Per-model usage aggregate."""

    model_id: str
    requests: int
    input_units: int
    output_units: int
    total_cost: int


class UsageSummaryResponse(BaseModel):
    """GET /v1/accounts/{account_id}/usage response."""

    account_id: str
    since: str  # ISO 8601 timestamp
    requests: int
    total_cost: int
    total_input_units: int
    total_output_units: int
    by_model: list[ModelUsageResponse]
    platform_requests: int
    personal_key_requests: int


# ============================================================================
# Catalog Models
# ============================================================================


class TierResponse(BaseModel):
    """Single tier in the catalog listing."""

    tier: str
    rank: int
    monthly_credit_allotment: int
    personal_key_allowed: bool
    allowed_models: list[str]
    multipliers: dict[str, int]
    features: list[str]
    next_tier: str | None = None


class CreditPackResponse(BaseModel):
    """Purchasable credit pack."""

    pack_id: str
    name: str
    credits: int
    price_minor: int


class CatalogResponse(BaseModel):
    """GET /v1/catalog/tiers response."""

    tiers: list[TierResponse]
    credit_packs: list[CreditPackResponse]


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    storage: str
    catalog_tiers: int
    timestamp: str
