"""
Tests for domain models.

Covers validation in __post_init__, immutability and helper methods.
"""

from dataclasses import FrozenInstanceError
from datetime import UTC, datetime
from uuid import uuid4

import pytest

from credit_engine.models.api import (
    AddCreditsRequest,
    BillingRoute,
    CycleResetRequest,
    DenialReason,
    LedgerReason,
    ModelCategory,
    ReservationStatus,
    Tier,
    UsageOutcome,
)
from credit_engine.models.domain import (
    AccountProfile,
    BillingDecision,
    CreditPack,
    KeyHandle,
    ModelSpec,
    Reservation,
    TierConfig,
    UsageRecordData,
)

# ============================================================================
# Catalog Models
# ============================================================================


class TestModelSpec:
    """Tests for ModelSpec."""

    def test_base_cost_rounds_up_blocks(self):
        spec = ModelSpec(model_id="m", provider="p", category=ModelCategory.BASE)

        assert spec.base_cost(0) == 0
        assert spec.base_cost(1) == 1
        assert spec.base_cost(1000) == 1
        assert spec.base_cost(1001) == 2

    def test_per_item_pricing(self):
        spec = ModelSpec(
            model_id="img",
            provider="p",
            category=ModelCategory.ADVANCED,
            units_per_block=1,
            credits_per_block=16,
        )

        assert spec.base_cost(3) == 48

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"model_id": ""},
            {"provider": ""},
            {"units_per_block": 0},
            {"credits_per_block": -1},
        ],
    )
    def test_invalid_spec(self, kwargs: dict):
        values = {"model_id": "m", "provider": "p", "category": ModelCategory.BASE}
        values.update(kwargs)
        with pytest.raises(ValueError):
            ModelSpec(**values)

    def test_negative_units(self):
        spec = ModelSpec(model_id="m", provider="p", category=ModelCategory.BASE)
        with pytest.raises(ValueError):
            spec.base_cost(-1)


class TestTierConfig:
    """Tests for TierConfig."""

    def test_collections_frozen(self):
        multipliers = {ModelCategory.BASE: 1}
        config = TierConfig(
            tier=Tier.ENTRY,
            rank=1,
            allowed_models={"m"},
            monthly_credit_allotment=10,
            model_cost_multiplier=multipliers,
            features=["a"],
        )
        multipliers[ModelCategory.BASE] = 99

        assert isinstance(config.allowed_models, frozenset)
        assert config.model_cost_multiplier[ModelCategory.BASE] == 1
        assert config.features == ("a",)
        with pytest.raises(TypeError):
            config.model_cost_multiplier[ModelCategory.BASE] = 5

    def test_frozen(self):
        config = TierConfig(
            tier=Tier.ENTRY,
            rank=1,
            allowed_models=frozenset(),
            monthly_credit_allotment=10,
            model_cost_multiplier={},
        )
        with pytest.raises(FrozenInstanceError):
            config.rank = 2


class TestCreditPack:
    """Tests for CreditPack."""

    def test_non_positive_credits(self):
        with pytest.raises(ValueError):
            CreditPack(pack_id="p", name="P", credits=0, price_minor=100)

    def test_negative_price(self):
        with pytest.raises(ValueError):
            CreditPack(pack_id="p", name="P", credits=10, price_minor=-1)


# ============================================================================
# Account Models
# ============================================================================


class TestAccountProfile:
    """Tests for AccountProfile and KeyHandle."""

    def test_usable_key(self):
        profile = AccountProfile(
            account_id="a",
            tier="premium",
            personal_keys={"openai": KeyHandle(provider="openai", key_id="k")},
        )

        assert profile.has_usable_key("openai")
        assert not profile.has_usable_key("anthropic")

    @pytest.mark.parametrize(
        "handle",
        [
            KeyHandle(provider="openai", key_id="k", active=False),
            KeyHandle(provider="openai", key_id="k", validated=False),
        ],
    )
    def test_unusable_key(self, handle: KeyHandle):
        profile = AccountProfile(account_id="a", tier="premium", personal_keys={"openai": handle})

        assert not profile.has_usable_key("openai")

    def test_keys_read_only(self):
        profile = AccountProfile(account_id="a", tier="premium")
        with pytest.raises(TypeError):
            profile.personal_keys["openai"] = KeyHandle(provider="openai", key_id="k")

    def test_empty_account_id(self):
        with pytest.raises(ValueError):
            AccountProfile(account_id="", tier="entry")


# ============================================================================
# Usage / Routing Models
# ============================================================================


class TestUsageRecordData:
    """Tests for UsageRecordData validation."""

    def _values(self, **overrides) -> dict:
        values = {
            "usage_id": "u",
            "account_id": "a",
            "model_id": "m",
            "input_units": 1,
            "output_units": 1,
            "computed_cost": 2,
            "billing_route": BillingRoute.PLATFORM_CREDITS,
            "outcome": UsageOutcome.SUCCESS,
            "created_at": datetime.now(UTC),
        }
        values.update(overrides)
        return values

    def test_valid(self):
        record = UsageRecordData(**self._values(related_ledger_entry_id=uuid4()))
        assert record.computed_cost == 2

    @pytest.mark.parametrize(
        "overrides",
        [
            {"billing_route": BillingRoute.DENIED},
            {"billing_route": BillingRoute.PERSONAL_KEY, "related_ledger_entry_id": uuid4()},
            {"input_units": -1},
            {"computed_cost": -1},
            {"shortfall": -1},
        ],
    )
    def test_invalid(self, overrides: dict):
        with pytest.raises(ValueError):
            UsageRecordData(**self._values(**overrides))


class TestReservation:
    """Tests for Reservation transitions."""

    def test_transition_keeps_debit_entry(self):
        now = datetime.now(UTC)
        entry_id = uuid4()
        reservation = Reservation(
            usage_id="u",
            account_id="a",
            tier="entry",
            model_id="m",
            route=BillingRoute.PLATFORM_CREDITS,
            estimated_units=5,
            estimated_cost=5,
            status=ReservationStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        approved = reservation.transition(ReservationStatus.APPROVED, now, entry_id)
        reconciled = approved.transition(ReservationStatus.RECONCILED, now)

        assert reservation.status == ReservationStatus.PENDING
        assert approved.debit_entry_id == entry_id
        assert reconciled.debit_entry_id == entry_id
        assert reconciled.status == ReservationStatus.RECONCILED


class TestBillingDecision:
    """Tests for BillingDecision constructors."""

    def test_approve(self):
        decision = BillingDecision.approve("u", BillingRoute.PERSONAL_KEY, 0)

        assert decision.allowed is True
        assert decision.reason is None

    def test_deny_is_always_denied_route(self):
        decision = BillingDecision.deny(
            "u", DenialReason.INSUFFICIENT_CREDITS, "no", available=1, required=2
        )

        assert decision.allowed is False
        assert decision.route == BillingRoute.DENIED
        assert decision.available == 1
        assert decision.required == 2


# ============================================================================
# API Request Models
# ============================================================================


class TestRequestModels:
    """Tests for request validation."""

    def test_add_credits_defaults_to_purchase(self):
        request = AddCreditsRequest(amount=10, idempotency_key="k")
        assert request.reason == LedgerReason.PURCHASE

    def test_add_credits_refund(self):
        request = AddCreditsRequest(amount=10, idempotency_key="k", reason=LedgerReason.REFUND)
        assert request.reason == LedgerReason.REFUND

    @pytest.mark.parametrize(
        "kwargs",
        [
            {},
            {"amount": 10, "pack_id": "basic"},
            {"amount": 10, "reason": LedgerReason.MONTHLY_RESET},
        ],
    )
    def test_add_credits_invalid(self, kwargs: dict):
        with pytest.raises(ValueError):
            AddCreditsRequest(idempotency_key="k", **kwargs)

    @pytest.mark.parametrize("cycle", ["2026-1", "26-01", "2026-00", "2026-13", "2026/01"])
    def test_cycle_invalid(self, cycle: str):
        with pytest.raises(ValueError):
            CycleResetRequest(cycle=cycle)

    def test_cycle_valid(self):
        assert CycleResetRequest(cycle="2026-01").cycle == "2026-01"
        assert CycleResetRequest().cycle is None
