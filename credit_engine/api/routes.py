"""
API Routes - FastAPI endpoints for billing decisions, ledger and usage.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from credit_engine.api.dependencies import get_engine, require_api_key
from credit_engine.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    IdempotencyConflictError,
    IdentityServiceError,
    InvalidReservationStateError,
    LedgerUnavailableError,
    ReservationNotFoundError,
    UnknownTierError,
    WriteVerificationError,
)
from credit_engine.models.api import (
    AddCreditsRequest,
    BalanceResponse,
    BillingDecisionResponse,
    CancelRequest,
    CatalogResponse,
    CreditPackResponse,
    CycleResetRequest,
    DenialReason,
    EvaluateRequest,
    HealthResponse,
    LedgerEntryResponse,
    LedgerHistoryResponse,
    ModelUsageResponse,
    ReconcileRequest,
    TierResponse,
    UsageRecordResponse,
    UsageSummaryResponse,
)
from credit_engine.models.domain import BillingDecision, LedgerEntryData, UsageRecordData
from credit_engine.services.cycle_reset import month_start, parse_cycle
from credit_engine.services.engine import BillingEngine

router = APIRouter()

# Denial reason -> HTTP status of the evaluate response
DENIAL_STATUS: dict[DenialReason, int] = {
    DenialReason.MODEL_NOT_IN_TIER: status.HTTP_403_FORBIDDEN,
    DenialReason.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    DenialReason.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    DenialReason.LEDGER_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    DenialReason.IDENTITY_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    DenialReason.UNKNOWN_MODEL: status.HTTP_500_INTERNAL_SERVER_ERROR,
    DenialReason.RESERVATION_RELEASED: status.HTTP_409_CONFLICT,
}


# ============================================================================
# Response Conversion
# ============================================================================


def _decision_response(decision: BillingDecision) -> BillingDecisionResponse:
    return BillingDecisionResponse(
        allowed=decision.allowed,
        route=decision.route,
        usage_id=decision.usage_id,
        estimated_cost=decision.estimated_cost,
        reason=decision.reason,
        message=decision.message,
        available=decision.available,
        required=decision.required,
        required_tier=decision.required_tier,
        retryable=decision.retryable,
    )


def _usage_response(record: UsageRecordData) -> UsageRecordResponse:
    return UsageRecordResponse(
        usage_id=record.usage_id,
        account_id=record.account_id,
        model_id=record.model_id,
        input_units=record.input_units,
        output_units=record.output_units,
        computed_cost=record.computed_cost,
        estimated_cost=record.estimated_cost,
        shortfall=record.shortfall,
        billing_route=record.billing_route,
        outcome=record.outcome,
        related_ledger_entry_id=record.related_ledger_entry_id,
        created_at=record.created_at.isoformat(),
    )


def _entry_response(entry: LedgerEntryData) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        entry_id=entry.entry_id,
        account_id=entry.account_id,
        delta=entry.delta,
        reason=entry.reason,
        resulting_balance=entry.resulting_balance,
        related_usage_id=entry.related_usage_id,
        description=entry.description,
        created_at=entry.created_at.isoformat(),
    )


def _storage_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Billing storage unavailable, retry later",
        headers={"Retry-After": "1"},
    )


# ============================================================================
# Billing Decisions
# ============================================================================


@router.post(
    "/v1/billing/evaluate",
    response_model=BillingDecisionResponse,
    dependencies=[Depends(require_api_key)],
)
async def evaluate(
    request: EvaluateRequest,
    engine: BillingEngine = Depends(get_engine),
) -> BillingDecisionResponse:
    """
    Decide the billing route for a request before it is dispatched.

    Approved decisions return 200. Denials return the decision as the error
    detail with a status matching the denial reason.
    """
    try:
        decision = await engine.router.evaluate(
            account_id=request.account_id,
            model_id=request.model_id,
            estimated_units=request.estimated_units,
            usage_id=request.usage_id,
        )
    except (IdempotencyConflictError, InvalidReservationStateError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    response = _decision_response(decision)
    if decision.allowed:
        return response

    assert decision.reason is not None
    headers = {"Retry-After": "1"} if decision.retryable else None
    raise HTTPException(
        status_code=DENIAL_STATUS[decision.reason],
        detail=response.model_dump(mode="json"),
        headers=headers,
    )


@router.post(
    "/v1/billing/reconcile",
    response_model=UsageRecordResponse,
    dependencies=[Depends(require_api_key)],
)
async def reconcile(
    request: ReconcileRequest,
    engine: BillingEngine = Depends(get_engine),
) -> UsageRecordResponse:
    """
    Settle a completed request against its estimate and record its usage.

    Idempotent per usage_id: a retry returns the same record.
    """
    try:
        record = await engine.router.reconcile(
            usage_id=request.usage_id,
            actual_input_units=request.actual_input_units,
            actual_output_units=request.actual_output_units,
            outcome=request.outcome,
            bill_partial=request.bill_partial,
        )
        return _usage_response(record)

    except ReservationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    except (InvalidReservationStateError, IdempotencyConflictError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    except LedgerUnavailableError as exc:
        raise _storage_unavailable() from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc


@router.post(
    "/v1/billing/cancel",
    response_model=UsageRecordResponse,
    dependencies=[Depends(require_api_key)],
)
async def cancel(
    request: CancelRequest,
    engine: BillingEngine = Depends(get_engine),
) -> UsageRecordResponse:
    """Refund a request cancelled before producing output."""
    try:
        record = await engine.router.cancel(request.usage_id)
        return _usage_response(record)

    except ReservationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    except (InvalidReservationStateError, IdempotencyConflictError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    except LedgerUnavailableError as exc:
        raise _storage_unavailable() from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc


# ============================================================================
# Accounts
# ============================================================================


@router.get(
    "/v1/accounts/{account_id}/balance",
    response_model=BalanceResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_balance(
    account_id: str,
    engine: BillingEngine = Depends(get_engine),
) -> BalanceResponse:
    """Current credit balance."""
    try:
        balance = await engine.ledger.balance(account_id)
    except LedgerUnavailableError as exc:
        raise _storage_unavailable() from exc
    return BalanceResponse(account_id=account_id, balance=balance)


@router.get(
    "/v1/accounts/{account_id}/ledger",
    response_model=LedgerHistoryResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_ledger(
    account_id: str,
    limit: int = Query(100, ge=1, le=1000),
    engine: BillingEngine = Depends(get_engine),
) -> LedgerHistoryResponse:
    """Most recent ledger entries, oldest first."""
    try:
        entries = await engine.ledger.history(account_id, limit)
        balance = await engine.ledger.balance(account_id)
    except LedgerUnavailableError as exc:
        raise _storage_unavailable() from exc

    return LedgerHistoryResponse(
        account_id=account_id,
        balance=balance,
        entries=[_entry_response(e) for e in entries],
    )


@router.get(
    "/v1/accounts/{account_id}/usage",
    response_model=UsageSummaryResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_usage(
    account_id: str,
    since: datetime | None = Query(None, description="Window start; defaults to this month"),
    engine: BillingEngine = Depends(get_engine),
) -> UsageSummaryResponse:
    """Usage analytics since a point in time."""
    if since is None:
        since = month_start(datetime.now(UTC))
    elif since.tzinfo is None:
        since = since.replace(tzinfo=UTC)

    try:
        summary = await engine.usage.summary(account_id, since)
    except LedgerUnavailableError as exc:
        raise _storage_unavailable() from exc

    return UsageSummaryResponse(
        account_id=summary.account_id,
        since=summary.since.isoformat(),
        requests=summary.requests,
        total_cost=summary.total_cost,
        total_input_units=summary.total_input_units,
        total_output_units=summary.total_output_units,
        by_model=[
            ModelUsageResponse(
                model_id=m.model_id,
                requests=m.requests,
                input_units=m.input_units,
                output_units=m.output_units,
                total_cost=m.total_cost,
            )
            for m in summary.by_model
        ],
        platform_requests=summary.platform_requests,
        personal_key_requests=summary.personal_key_requests,
    )


@router.post(
    "/v1/accounts/{account_id}/credits",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def add_credits(
    account_id: str,
    request: AddCreditsRequest,
    engine: BillingEngine = Depends(get_engine),
) -> LedgerEntryResponse:
    """
    Add credits after a purchase (credit pack or amount) or a refund.

    Idempotent per idempotency_key.
    """
    amount = request.amount
    description = request.description
    if request.pack_id is not None:
        pack = engine.catalog.current.credit_pack(request.pack_id)
        if pack is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Unknown credit pack: {request.pack_id}",
            )
        amount = pack.credits
        description = description or f"Credit pack {pack.name}"

    assert amount is not None
    try:
        entry = await engine.ledger.credit(
            account_id,
            amount,
            request.reason,
            idempotency_key=f"{request.reason.value}:{request.idempotency_key}",
            description=description,
        )
    except IdempotencyConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Idempotency key already used for a different credit",
            headers={"X-Existing-Entry-ID": str(exc.existing_id)},
        ) from exc
    except LedgerUnavailableError as exc:
        raise _storage_unavailable() from exc

    return _entry_response(entry)


@router.post(
    "/v1/accounts/{account_id}/cycle-reset",
    response_model=LedgerEntryResponse,
    dependencies=[Depends(require_api_key)],
)
async def reset_cycle(
    account_id: str,
    request: CycleResetRequest | None = None,
    engine: BillingEngine = Depends(get_engine),
) -> LedgerEntryResponse:
    """Apply the tier's monthly allotment (at most once per cycle)."""
    cycle_start = parse_cycle(request.cycle) if request and request.cycle else None
    try:
        entry = await engine.cycles.reset_account(account_id, cycle_start)

    except AccountNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    except IdentityServiceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc

    except UnknownTierError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc

    except LedgerUnavailableError as exc:
        raise _storage_unavailable() from exc

    return _entry_response(entry)


# ============================================================================
# Catalog & Health
# ============================================================================


@router.get("/v1/catalog/tiers", response_model=CatalogResponse)
async def get_catalog(engine: BillingEngine = Depends(get_engine)) -> CatalogResponse:
    """Tiers, their models and allotments, and purchasable credit packs."""
    catalog = engine.catalog.current
    tiers = []
    for config in catalog.tiers:
        upgrade = catalog.upgrade_path(config.tier)
        tiers.append(
            TierResponse(
                tier=config.tier.value,
                rank=config.rank,
                monthly_credit_allotment=config.monthly_credit_allotment,
                personal_key_allowed=config.personal_key_allowed,
                allowed_models=sorted(config.allowed_models),
                multipliers={c.value: m for c, m in config.model_cost_multiplier.items()},
                features=list(config.features),
                next_tier=upgrade.next_tier.value if upgrade else None,
            )
        )
    return CatalogResponse(
        tiers=tiers,
        credit_packs=[
            CreditPackResponse(
                pack_id=p.pack_id, name=p.name, credits=p.credits, price_minor=p.price_minor
            )
            for p in catalog.credit_packs
        ],
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(engine: BillingEngine = Depends(get_engine)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies storage connectivity.
    """
    try:
        await engine.ping()

        return HealthResponse(
            status="healthy",
            storage=engine.storage,
            catalog_tiers=len(engine.catalog.current.tiers),
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "storage": engine.storage,
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
