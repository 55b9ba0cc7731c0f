"""
Billing Router - Decides who pays for a request and settles it afterwards.

Per request:
    Received -> AccessChecked -> Denied
                              -> RouteChosen -> platform: Debited -> Dispatched -> Reconciled -> Recorded
                                             -> personal key: Dispatched -> Recorded

Denials happen before the orchestrator dispatches anything, and storage
faults deny (fail closed). After dispatch nothing is rolled back: a
reconciliation shortfall is logged and recorded, never raised.
"""

import time
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from structlog import get_logger

from credit_engine.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    IdempotencyConflictError,
    IdentityServiceError,
    InsufficientCreditsError,
    InvalidReservationStateError,
    LedgerUnavailableError,
    ReservationNotFoundError,
    UnknownModelError,
    UnknownTierError,
)
from credit_engine.models.api import (
    BillingRoute,
    DenialReason,
    LedgerReason,
    ReservationStatus,
    UsageOutcome,
)
from credit_engine.models.domain import BillingDecision, Reservation, UsageRecordData
from credit_engine.observability.logging import log_context
from credit_engine.observability.metrics import metrics
from credit_engine.observability.tracing import trace_operation
from credit_engine.services.accounts import AccountDirectory
from credit_engine.services.catalog import CatalogHolder
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.stores import ReservationStore
from credit_engine.services.usage import UsageRecorder

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def estimate_key(usage_id: str) -> str:
    """Idempotency key of the pre-dispatch debit."""
    return f"{usage_id}:estimate"


def settle_key(usage_id: str) -> str:
    """Idempotency key of the reconciliation adjustment."""
    return f"{usage_id}:settle"


def release_key(usage_id: str) -> str:
    """Idempotency key of a stale-reservation refund."""
    return f"{usage_id}:release"


class BillingRouter:
    """Billing decisions and reconciliation for the request orchestrator."""

    def __init__(
        self,
        catalog: CatalogHolder,
        ledger: CreditLedger,
        usage: UsageRecorder,
        reservations: ReservationStore,
        directory: AccountDirectory,
        bill_partial_output: bool = True,
        allow_shortfall_overdraft: bool = False,
        stale_after_seconds: int = 900,
    ) -> None:
        self.catalog = catalog
        self.ledger = ledger
        self.usage = usage
        self.reservations = reservations
        self.directory = directory
        self.bill_partial_output = bill_partial_output
        self.allow_shortfall_overdraft = allow_shortfall_overdraft
        self.stale_after_seconds = stale_after_seconds

    # ========================================================================
    # Evaluate (before dispatch)
    # ========================================================================

    async def evaluate(
        self,
        account_id: str,
        model_id: str,
        estimated_units: int,
        usage_id: str | None = None,
    ) -> BillingDecision:
        """
        Decide the billing route and pre-pay the estimate.

        Never raises for business outcomes: denials come back as a decision.
        A retry with the same usage_id returns the original decision without
        debiting again.

        Raises:
            ValueError: Negative estimate
            IdempotencyConflictError: usage_id already used for another account or model
            InvalidReservationStateError: usage_id belongs to a released reservation
        """
        if estimated_units < 0:
            raise ValueError(f"estimated_units cannot be negative: {estimated_units}")

        usage_id = usage_id or str(uuid4())
        started = time.perf_counter()

        with log_context(usage_id=usage_id, account_id=account_id), trace_operation(
            "billing.evaluate",
            usage_id=usage_id,
            account_id=account_id,
            model_id=model_id,
        ) as span:
            try:
                decision = await self._evaluate(account_id, model_id, estimated_units, usage_id)
            except LedgerUnavailableError as exc:
                metrics.record_error("LedgerUnavailableError", "evaluate")
                logger.error("billing_ledger_unavailable", model_id=model_id, error=str(exc))
                decision = BillingDecision.deny(
                    usage_id,
                    DenialReason.LEDGER_UNAVAILABLE,
                    "Billing storage unavailable, request not allowed",
                    retryable=True,
                )

            span.set_attribute("billing.route", decision.route.value)
            span.set_attribute("billing.estimated_cost", decision.estimated_cost)
            if decision.reason is not None:
                span.set_attribute("billing.denial_reason", decision.reason.value)

            if decision.allowed:
                logger.info(
                    "billing_approved",
                    model_id=model_id,
                    route=decision.route.value,
                    estimated_cost=decision.estimated_cost,
                )
            else:
                logger.info(
                    "billing_denied",
                    model_id=model_id,
                    reason=decision.reason.value if decision.reason else None,
                    available=decision.available,
                    required=decision.required,
                )

        metrics.record_decision(
            route=decision.route.value,
            reason=decision.reason.value if decision.reason else None,
            duration=time.perf_counter() - started,
            estimated_cost=decision.estimated_cost if decision.allowed else 0,
        )
        return decision

    async def _evaluate(
        self, account_id: str, model_id: str, estimated_units: int, usage_id: str
    ) -> BillingDecision:
        existing = await self.reservations.get(usage_id)
        if existing is not None:
            return await self._replay(existing, account_id, model_id)

        # One catalog snapshot for the whole decision
        catalog = self.catalog.current

        try:
            profile = await self.directory.get_profile(account_id)
        except AccountNotFoundError as exc:
            return BillingDecision.deny(usage_id, DenialReason.ACCOUNT_NOT_FOUND, str(exc))
        except IdentityServiceError as exc:
            metrics.record_error("IdentityServiceError", "evaluate")
            return BillingDecision.deny(
                usage_id, DenialReason.IDENTITY_UNAVAILABLE, str(exc), retryable=True
            )

        tier = profile.tier

        # 1. Access check
        if not catalog.allows(tier, model_id):
            required = catalog.lowest_tier_allowing(model_id)
            return BillingDecision.deny(
                usage_id,
                DenialReason.MODEL_NOT_IN_TIER,
                f"Model {model_id} is not available on tier {tier}",
                required_tier=required.value if required else None,
            )

        now = _utc_now()

        # 2. Personal key
        if catalog.personal_key_allowed(tier) and profile.has_usable_key(
            catalog.provider_of(model_id)
        ):
            approved = Reservation(
                usage_id=usage_id,
                account_id=account_id,
                tier=tier,
                model_id=model_id,
                route=BillingRoute.PERSONAL_KEY,
                estimated_units=estimated_units,
                estimated_cost=0,
                status=ReservationStatus.APPROVED,
                created_at=now,
                updated_at=now,
            )
            if not await self.reservations.compare_and_set(approved, None):
                return await self._replay_current(usage_id, account_id, model_id)
            return BillingDecision.approve(usage_id, BillingRoute.PERSONAL_KEY, 0)

        # 3. Platform credits
        try:
            estimated_cost = catalog.cost_of(tier, model_id, estimated_units)
        except (UnknownModelError, UnknownTierError) as exc:
            metrics.record_error(type(exc).__name__, "evaluate")
            logger.error("billing_cost_unavailable", model_id=model_id, tier=tier, error=str(exc))
            return BillingDecision.deny(usage_id, DenialReason.UNKNOWN_MODEL, str(exc))

        reservation = Reservation(
            usage_id=usage_id,
            account_id=account_id,
            tier=tier,
            model_id=model_id,
            route=BillingRoute.PLATFORM_CREDITS,
            estimated_units=estimated_units,
            estimated_cost=estimated_cost,
            status=ReservationStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        if not await self.reservations.compare_and_set(reservation, None):
            return await self._replay_current(usage_id, account_id, model_id)
        return await self._debit_estimate(reservation)

    async def _replay_current(
        self, usage_id: str, account_id: str, model_id: str
    ) -> BillingDecision:
        """Replay against the reservation a concurrent attempt just wrote."""
        current = await self.reservations.get(usage_id)
        if current is None:
            raise DataIntegrityError(f"Reservation {usage_id} missing after a conflicting write")
        return await self._replay(current, account_id, model_id)

    async def _replay(
        self, existing: Reservation, account_id: str, model_id: str
    ) -> BillingDecision:
        """
        Decision for a usage_id seen before.

        A denial is terminal for its usage_id: a new attempt needs a new one.
        """
        if existing.account_id != account_id or existing.model_id != model_id:
            raise IdempotencyConflictError(existing.usage_id, existing.usage_id)

        if existing.status in (ReservationStatus.APPROVED, ReservationStatus.RECONCILED):
            logger.info("billing_decision_replayed", status=existing.status.value)
            return BillingDecision.approve(
                existing.usage_id, existing.route, existing.estimated_cost
            )
        if existing.status == ReservationStatus.PENDING:
            # Earlier attempt stopped between reservation and approval
            return await self._debit_estimate(existing)
        if existing.status == ReservationStatus.DENIED:
            logger.info("billing_decision_replayed", status=existing.status.value)
            return BillingDecision.deny(
                existing.usage_id,
                DenialReason.INSUFFICIENT_CREDITS,
                f"Request {existing.usage_id} was denied; retry with a new usage_id",
                estimated_cost=existing.estimated_cost,
                available=await self.ledger.balance(existing.account_id),
                required=existing.estimated_cost,
            )
        raise InvalidReservationStateError(existing.usage_id, existing.status.value)

    async def _debit_estimate(self, reservation: Reservation) -> BillingDecision:
        """Pre-pay a pending platform reservation and approve it."""
        usage_id = reservation.usage_id
        cost = reservation.estimated_cost
        debit_entry_id = None

        if cost > 0:
            try:
                entry = await self.ledger.debit(
                    reservation.account_id,
                    cost,
                    LedgerReason.AI_USAGE,
                    related_usage_id=usage_id,
                    idempotency_key=estimate_key(usage_id),
                    description=f"Estimate for {reservation.model_id}",
                )
            except InsufficientCreditsError as exc:
                # Losing this write means the reservation was released: still denied
                await self.reservations.compare_and_set(
                    reservation.transition(ReservationStatus.DENIED, _utc_now()),
                    ReservationStatus.PENDING,
                )
                return BillingDecision.deny(
                    usage_id,
                    DenialReason.INSUFFICIENT_CREDITS,
                    str(exc),
                    estimated_cost=cost,
                    available=exc.available,
                    required=exc.required,
                )
            debit_entry_id = entry.entry_id

        approved = reservation.transition(ReservationStatus.APPROVED, _utc_now(), debit_entry_id)
        if await self.reservations.compare_and_set(approved, ReservationStatus.PENDING):
            return BillingDecision.approve(usage_id, BillingRoute.PLATFORM_CREDITS, cost)

        current = await self.reservations.get(usage_id)
        if current is not None and current.status in (
            ReservationStatus.APPROVED,
            ReservationStatus.RECONCILED,
        ):
            # A concurrent attempt with this usage_id approved the same single debit
            return BillingDecision.approve(usage_id, BillingRoute.PLATFORM_CREDITS, cost)

        # Released (or denied) while this attempt was debiting: never dispatch
        status_now = current.status.value if current is not None else None
        if cost > 0:
            await self._refund_estimate(reservation, cost)
        metrics.record_error("ReservationReleased", "evaluate")
        logger.warning("billing_approval_lost", status=status_now, refunded=cost)
        return BillingDecision.deny(
            usage_id,
            DenialReason.RESERVATION_RELEASED,
            f"Reservation {usage_id} was released before approval",
            estimated_cost=cost,
        )

    async def _refund_estimate(self, reservation: Reservation, amount: int) -> None:
        """Return a released reservation's estimate (one refund per usage_id)."""
        await self.ledger.credit(
            reservation.account_id,
            amount,
            LedgerReason.REFUND,
            related_usage_id=reservation.usage_id,
            idempotency_key=release_key(reservation.usage_id),
            description="Released reservation",
        )

    # ========================================================================
    # Reconcile (after dispatch)
    # ========================================================================

    async def reconcile(
        self,
        usage_id: str,
        actual_input_units: int,
        actual_output_units: int,
        outcome: UsageOutcome,
        bill_partial: bool | None = None,
    ) -> UsageRecordData:
        """
        Settle a dispatched request against its estimate and record usage.

        Args:
            bill_partial: Bill partial completions; None uses the configured default

        Raises:
            ReservationNotFoundError: usage_id was never approved
            InvalidReservationStateError: Reservation denied or released
            IdempotencyConflictError: Already reconciled with different data
            LedgerUnavailableError: Storage fault (safe to retry)
        """
        if actual_input_units < 0 or actual_output_units < 0:
            raise ValueError("Actual units cannot be negative")

        with log_context(usage_id=usage_id), trace_operation(
            "billing.reconcile", usage_id=usage_id, outcome=outcome.value
        ) as span:
            reservation = await self.reservations.get(usage_id)
            if reservation is None:
                raise ReservationNotFoundError(usage_id)

            if reservation.status == ReservationStatus.RECONCILED:
                return await self._reconciled_record(
                    reservation, actual_input_units, actual_output_units, outcome
                )
            if reservation.status != ReservationStatus.APPROVED:
                raise InvalidReservationStateError(usage_id, reservation.status.value)

            bill_partial = self.bill_partial_output if bill_partial is None else bill_partial
            actual_cost = self._actual_cost(
                reservation, actual_input_units + actual_output_units, outcome, bill_partial
            )
            span.set_attribute("billing.actual_cost", actual_cost)

            try:
                refunded, shortfall = await self._settle(reservation, actual_cost)
                record = await self.usage.record(
                    usage_id=usage_id,
                    account_id=reservation.account_id,
                    model_id=reservation.model_id,
                    input_units=actual_input_units,
                    output_units=actual_output_units,
                    computed_cost=actual_cost,
                    route=reservation.route,
                    outcome=outcome,
                    related_ledger_entry_id=reservation.debit_entry_id,
                    estimated_cost=reservation.estimated_cost,
                    shortfall=shortfall,
                )
                if not await self.reservations.compare_and_set(
                    reservation.transition(ReservationStatus.RECONCILED, _utc_now()),
                    ReservationStatus.APPROVED,
                ):
                    # Concurrent reconcile of the same usage_id finished first
                    return await self._reconciled_record(
                        reservation, actual_input_units, actual_output_units, outcome
                    )
            except LedgerUnavailableError as exc:
                metrics.record_error("LedgerUnavailableError", "reconcile")
                logger.error(
                    "reconciliation_failed",
                    account_id=reservation.account_id,
                    error=str(exc),
                )
                raise

            metrics.record_reconciliation(
                route=reservation.route.value,
                outcome=outcome.value,
                refunded=refunded,
                shortfall=shortfall,
            )
            logger.info(
                "reconciliation_completed",
                account_id=reservation.account_id,
                route=reservation.route.value,
                outcome=outcome.value,
                estimated_cost=reservation.estimated_cost,
                actual_cost=actual_cost,
                refunded=refunded,
                shortfall=shortfall,
            )
            return record

    async def cancel(self, usage_id: str) -> UsageRecordData:
        """Reconcile a request cancelled before producing output (full refund)."""
        return await self.reconcile(usage_id, 0, 0, UsageOutcome.CANCELLED)

    def _actual_cost(
        self, reservation: Reservation, units: int, outcome: UsageOutcome, bill_partial: bool
    ) -> int:
        """Platform cost of the completed request."""
        if reservation.route == BillingRoute.PERSONAL_KEY:
            return 0
        if outcome == UsageOutcome.SUCCESS or (outcome == UsageOutcome.PARTIAL and bill_partial):
            try:
                return self.catalog.current.cost_of(reservation.tier, reservation.model_id, units)
            except (UnknownModelError, UnknownTierError) as exc:
                # Catalog changed since evaluate; keep the prepaid estimate
                metrics.record_error(type(exc).__name__, "reconcile")
                logger.error(
                    "reconciliation_cost_unavailable",
                    model_id=reservation.model_id,
                    tier=reservation.tier,
                    error=str(exc),
                )
                return reservation.estimated_cost
        return 0

    async def _settle(self, reservation: Reservation, actual_cost: int) -> tuple[int, int]:
        """
        Apply the estimate-vs-actual adjustment.

        Returns:
            (refunded, shortfall) in credits
        """
        difference = reservation.estimated_cost - actual_cost
        if difference == 0:
            return 0, 0

        if difference > 0:
            await self.ledger.credit(
                reservation.account_id,
                difference,
                LedgerReason.REFUND,
                related_usage_id=reservation.usage_id,
                idempotency_key=settle_key(reservation.usage_id),
                description=f"Unused estimate for {reservation.model_id}",
            )
            return difference, 0

        extra = -difference
        try:
            entry = await self.ledger.debit(
                reservation.account_id,
                extra,
                LedgerReason.AI_USAGE,
                related_usage_id=reservation.usage_id,
                idempotency_key=settle_key(reservation.usage_id),
                allow_overdraft=self.allow_shortfall_overdraft,
                description=f"Usage above estimate for {reservation.model_id}",
            )
        except InsufficientCreditsError as exc:
            # Content already delivered: record the debt, never fail the request
            logger.warning(
                "reconciliation_shortfall",
                account_id=reservation.account_id,
                model_id=reservation.model_id,
                shortfall=extra,
                available=exc.available,
                required=exc.required,
            )
            return 0, extra

        if entry.resulting_balance < 0:
            logger.warning(
                "reconciliation_overdraft",
                account_id=reservation.account_id,
                model_id=reservation.model_id,
                amount=extra,
                balance_after=entry.resulting_balance,
            )
        return 0, 0

    async def _reconciled_record(
        self,
        reservation: Reservation,
        actual_input_units: int,
        actual_output_units: int,
        outcome: UsageOutcome,
    ) -> UsageRecordData:
        """Record of an already reconciled request, if the replay matches it."""
        record = await self.usage.get(reservation.usage_id)
        if record is None:
            raise DataIntegrityError(
                f"Reservation {reservation.usage_id} reconciled without a usage record"
            )
        if (
            record.input_units != actual_input_units
            or record.output_units != actual_output_units
            or record.outcome != outcome
        ):
            raise IdempotencyConflictError(reservation.usage_id, record.usage_id)
        logger.info("reconciliation_replayed", account_id=reservation.account_id)
        return record

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def release_stale_reservations(self, older_than: datetime | None = None) -> int:
        """
        Refund and void pending reservations that never reached approval.

        A reservation is voided before its estimate is refunded, and only if
        it is still pending; one approved in the meantime is left alone.

        Returns:
            Number of reservations released
        """
        cutoff = older_than or _utc_now() - timedelta(seconds=self.stale_after_seconds)
        stale = await self.reservations.list_stale(ReservationStatus.PENDING, cutoff)

        released = 0
        for reservation in stale:
            voided = reservation.transition(ReservationStatus.VOID, _utc_now())
            if not await self.reservations.compare_and_set(voided, ReservationStatus.PENDING):
                logger.info("reservation_release_skipped", usage_id=reservation.usage_id)
                continue

            debit = await self.ledger.find_entry(
                reservation.account_id, estimate_key(reservation.usage_id)
            )
            refunded = 0
            if debit is not None and debit.delta < 0:
                refunded = -debit.delta
                await self._refund_estimate(reservation, refunded)
            released += 1
            logger.info(
                "reservation_released",
                usage_id=reservation.usage_id,
                account_id=reservation.account_id,
                refunded=refunded,
            )

        if released:
            logger.info("stale_reservations_released", count=released, cutoff=cutoff.isoformat())
        return released
