"""
Usage Recorder - Append-only usage records and analytics reads.

NO DICTIONARIES - Records and aggregates are typed domain models.
"""

from datetime import UTC, datetime
from uuid import UUID

from structlog import get_logger

from credit_engine.exceptions import IdempotencyConflictError
from credit_engine.models.api import BillingRoute, UsageOutcome
from credit_engine.models.domain import ModelUsageAggregate, UsageRecordData, UsageSummary
from credit_engine.services.stores import UsageStore

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UsageRecorder:
    """
    Writes one usage record per completed request.

    Reads go to `read_store` when given (replica); writes always go to `store`.
    """

    def __init__(self, store: UsageStore, read_store: UsageStore | None = None) -> None:
        self.store = store
        self.read_store = read_store or store

    async def record(
        self,
        usage_id: str,
        account_id: str,
        model_id: str,
        input_units: int,
        output_units: int,
        computed_cost: int,
        route: BillingRoute,
        outcome: UsageOutcome = UsageOutcome.SUCCESS,
        related_ledger_entry_id: UUID | None = None,
        estimated_cost: int = 0,
        shortfall: int = 0,
    ) -> UsageRecordData:
        """
        Append the usage record of a request.

        Idempotent on usage_id: a repeat with the same request data returns
        the stored record.

        Raises:
            ValueError: Denied route, negative values, or a personal-key
                record referencing a ledger entry
            IdempotencyConflictError: usage_id already recorded with other data
            LedgerUnavailableError: Storage fault
        """
        candidate = UsageRecordData(
            usage_id=usage_id,
            account_id=account_id,
            model_id=model_id,
            input_units=input_units,
            output_units=output_units,
            computed_cost=computed_cost,
            billing_route=route,
            outcome=outcome,
            created_at=_utc_now(),
            estimated_cost=estimated_cost,
            shortfall=shortfall,
            related_ledger_entry_id=related_ledger_entry_id,
        )

        stored = await self.store.insert(candidate)

        if stored is not candidate:
            if not _same_request(stored, candidate):
                raise IdempotencyConflictError(usage_id, usage_id)
            logger.info("usage_record_replayed", usage_id=usage_id, account_id=account_id)
            return stored

        logger.info(
            "usage_recorded",
            usage_id=usage_id,
            account_id=account_id,
            model_id=model_id,
            route=route.value,
            outcome=outcome.value,
            input_units=input_units,
            output_units=output_units,
            computed_cost=computed_cost,
            shortfall=shortfall,
        )
        return stored

    async def get(self, usage_id: str) -> UsageRecordData | None:
        """Stored record for a usage ID (read from the primary)."""
        return await self.store.get(usage_id)

    # ========================================================================
    # Read Queries
    # ========================================================================

    async def total_cost_since(self, account_id: str, since: datetime) -> int:
        """Credits spent by an account since `since`."""
        return await self.read_store.total_cost_since(account_id, since)

    async def usage_by_model(
        self, account_id: str, since: datetime
    ) -> dict[str, ModelUsageAggregate]:
        """Per-model usage since `since`, keyed by model ID."""
        aggregates = await self.read_store.aggregate_by_model(account_id, since)
        return {a.model_id: a for a in aggregates}

    async def summary(self, account_id: str, since: datetime) -> UsageSummary:
        """Usage analytics for an account over a window."""
        by_model = await self.read_store.aggregate_by_model(account_id, since)
        by_route = await self.read_store.count_by_route(account_id, since)
        return UsageSummary(
            account_id=account_id,
            since=since,
            requests=sum(a.requests for a in by_model),
            total_cost=sum(a.total_cost for a in by_model),
            total_input_units=sum(a.input_units for a in by_model),
            total_output_units=sum(a.output_units for a in by_model),
            by_model=tuple(sorted(by_model, key=lambda a: a.total_cost, reverse=True)),
            platform_requests=by_route.get(BillingRoute.PLATFORM_CREDITS, 0),
            personal_key_requests=by_route.get(BillingRoute.PERSONAL_KEY, 0),
        )


def _same_request(a: UsageRecordData, b: UsageRecordData) -> bool:
    """Records describe the same request (timestamps may differ)."""
    return (
        a.account_id == b.account_id
        and a.model_id == b.model_id
        and a.input_units == b.input_units
        and a.output_units == b.output_units
        and a.billing_route == b.billing_route
        and a.outcome == b.outcome
    )
