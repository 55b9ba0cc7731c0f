"""
Tests for exception classes.

Covers attributes and string representations.
"""

from uuid import uuid4

import pytest

from credit_engine.exceptions import (
    AccountNotFoundError,
    AuthenticationError,
    BillingError,
    CatalogValidationError,
    DataIntegrityError,
    IdempotencyConflictError,
    IdentityServiceError,
    InsufficientCreditsError,
    InvalidReservationStateError,
    LedgerUnavailableError,
    ModelNotInTierError,
    ReservationNotFoundError,
    UnknownModelError,
    UnknownTierError,
    WriteVerificationError,
)


class TestHierarchy:
    """Every engine error is a BillingError."""

    @pytest.mark.parametrize(
        "error",
        [
            AccountNotFoundError("a"),
            AuthenticationError("bad"),
            CatalogValidationError(["x"]),
            DataIntegrityError("x"),
            IdempotencyConflictError("k", uuid4()),
            IdentityServiceError("x"),
            InsufficientCreditsError(1, 2),
            InvalidReservationStateError("u", "void"),
            LedgerUnavailableError("x"),
            ModelNotInTierError("entry", "m"),
            ReservationNotFoundError("u"),
            UnknownModelError("m"),
            UnknownTierError("t"),
            WriteVerificationError("x"),
        ],
    )
    def test_is_billing_error(self, error: BillingError):
        assert isinstance(error, BillingError)


class TestInsufficientCreditsError:
    """Tests for InsufficientCreditsError."""

    def test_attributes(self):
        error = InsufficientCreditsError(available=2, required=4)

        assert error.available == 2
        assert error.required == 4

    def test_message_format(self):
        assert str(InsufficientCreditsError(2, 4)) == "Insufficient credits. Available: 2, Required: 4"


class TestModelNotInTierError:
    """Tests for ModelNotInTierError."""

    def test_message_with_required_tier(self):
        error = ModelNotInTierError("entry", "openai/gpt-4o", required_tier="business")

        assert error.required_tier == "business"
        assert str(error) == "Model openai/gpt-4o is not available on tier entry (requires business)"

    def test_message_without_required_tier(self):
        assert "requires" not in str(ModelNotInTierError("entry", "m"))


class TestCatalogValidationError:
    """Tests for CatalogValidationError."""

    def test_problems_joined(self):
        error = CatalogValidationError(["a missing", "b negative"])

        assert error.problems == ["a missing", "b negative"]
        assert str(error) == "Invalid tier catalog: a missing; b negative"


class TestIdempotencyConflictError:
    """Tests for IdempotencyConflictError."""

    def test_attributes(self):
        existing = uuid4()
        error = IdempotencyConflictError("purchase:order-1", existing)

        assert error.key == "purchase:order-1"
        assert error.existing_id == existing
        assert str(existing) in str(error)


class TestMessagePrefixes:
    """String forms used in logs and HTTP details."""

    def test_ledger_unavailable(self):
        assert str(LedgerUnavailableError("timeout")) == "Ledger unavailable: timeout"

    def test_reservation_state(self):
        error = InvalidReservationStateError("u-1", "void")
        assert error.status == "void"
        assert str(error) == "Reservation u-1 is void"

    def test_unknown_tier(self):
        assert UnknownTierError("platinum").tier == "platinum"
