"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class ModelNotInTierError(BillingError):
    """Raised when a tier's allow-list does not include the requested model."""

    def __init__(self, tier: str, model_id: str, required_tier: str | None = None) -> None:
        self.tier = tier
        self.model_id = model_id
        self.required_tier = required_tier
        message = f"Model {model_id} is not available on tier {tier}"
        if required_tier:
            message += f" (requires {required_tier})"
        super().__init__(message)


class InsufficientCreditsError(BillingError):
    """Raised when account has insufficient balance for a debit."""

    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(f"Insufficient credits. Available: {available}, Required: {required}")


class UnknownModelError(BillingError):
    """Raised when a model has no category mapping in the catalog."""

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"Unknown model: {model_id}")


class UnknownTierError(BillingError):
    """Raised when a tier is not defined in the catalog."""

    def __init__(self, tier: str) -> None:
        self.tier = tier
        super().__init__(f"Unknown tier: {tier}")


class CatalogValidationError(BillingError):
    """Raised when a tier catalog fails startup validation."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("Invalid tier catalog: " + "; ".join(problems))


class LedgerUnavailableError(BillingError):
    """Raised when the ledger or usage storage cannot be reached."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Ledger unavailable: {message}")


class AccountNotFoundError(BillingError):
    """Raised when the identity service does not know an account."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class IdentityServiceError(BillingError):
    """Raised when the identity service fails or returns garbage."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Identity service error: {message}")


class ReservationNotFoundError(BillingError):
    """Raised when reconciling a usage ID that was never approved."""

    def __init__(self, usage_id: str) -> None:
        self.usage_id = usage_id
        super().__init__(f"No billing reservation for usage {usage_id}")


class InvalidReservationStateError(BillingError):
    """Raised when a reservation is not in a state that allows the operation."""

    def __init__(self, usage_id: str, status: str) -> None:
        self.usage_id = usage_id
        self.status = status
        super().__init__(f"Reservation {usage_id} is {status}")


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class IdempotencyConflictError(BillingError):
    """Raised when idempotency key reused with different data."""

    def __init__(self, key: str, existing_id: UUID | str) -> None:
        self.key = key
        self.existing_id = existing_id
        super().__init__(f"Idempotency conflict for {key}: existing ID {existing_id}")


class AuthenticationError(BillingError):
    """Raised when authentication fails (invalid API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
