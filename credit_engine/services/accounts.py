"""
Account Directory - Resolves an account's tier and personal provider keys.

The identity/organization service owns accounts; the engine only reads
them. Key handles carry status flags, never key material.
"""

from typing import Protocol
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field, ValidationError
from structlog import get_logger

from credit_engine.exceptions import AccountNotFoundError, IdentityServiceError
from credit_engine.models.domain import AccountProfile, KeyHandle

logger = get_logger(__name__)


class AccountDirectory(Protocol):
    """Lookup of account profiles."""

    async def get_profile(self, account_id: str) -> AccountProfile:
        """
        Resolve an account.

        Raises:
            AccountNotFoundError: Account does not exist
            IdentityServiceError: Directory unreachable or returned garbage
        """
        ...


class StaticAccountDirectory:
    """In-process directory for local runs and tests."""

    def __init__(self, profiles: list[AccountProfile] | None = None) -> None:
        self._profiles: dict[str, AccountProfile] = {}
        for profile in profiles or []:
            self.register(profile)

    def register(self, profile: AccountProfile) -> AccountProfile:
        """Add or replace an account profile."""
        self._profiles[profile.account_id] = profile
        return profile

    async def get_profile(self, account_id: str) -> AccountProfile:
        profile = self._profiles.get(account_id)
        if profile is None:
            raise AccountNotFoundError(account_id)
        return profile


# ============================================================================
# Identity Service Client
# ============================================================================


class KeyHandlePayload(BaseModel):
    """Personal key handle as returned by the identity service."""

    provider: str = Field(..., min_length=1)
    key_id: str = Field(..., min_length=1)
    active: bool = True
    validated: bool = False


class AccountPayload(BaseModel):
    """GET /v1/accounts/{account_id} response of the identity service."""

    account_id: str = Field(..., min_length=1)
    tier: str = Field(..., min_length=1)
    personal_keys: list[KeyHandlePayload] = Field(default_factory=list)

    def to_profile(self) -> AccountProfile:
        """Convert to the domain profile (one handle per provider, usable ones win)."""
        keys: dict[str, KeyHandle] = {}
        for k in self.personal_keys:
            handle = KeyHandle(
                provider=k.provider, key_id=k.key_id, active=k.active, validated=k.validated
            )
            current = keys.get(k.provider)
            if current is None or (handle.usable and not current.usable):
                keys[k.provider] = handle
        return AccountProfile(account_id=self.account_id, tier=self.tier, personal_keys=keys)


class HttpAccountDirectory:
    """Account directory backed by the identity service's HTTP API."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 2.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def get_profile(self, account_id: str) -> AccountProfile:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = await self.http_client.get(
                f"{self.base_url}/v1/accounts/{quote(account_id, safe='')}", headers=headers
            )
        except httpx.TimeoutException as e:
            logger.warning("identity_service_timeout", account_id=account_id, error=str(e))
            raise IdentityServiceError(f"timeout resolving {account_id}") from e
        except httpx.HTTPError as e:
            logger.warning("identity_service_unreachable", account_id=account_id, error=str(e))
            raise IdentityServiceError(f"cannot reach identity service: {e}") from e

        if response.status_code == 404:
            raise AccountNotFoundError(account_id)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "identity_service_error",
                account_id=account_id,
                status=e.response.status_code,
            )
            raise IdentityServiceError(f"status {e.response.status_code}") from e

        try:
            payload = AccountPayload.model_validate_json(response.content)
        except ValidationError as e:
            logger.error("identity_service_bad_payload", account_id=account_id, error=str(e))
            raise IdentityServiceError("malformed account payload") from e

        if payload.account_id != account_id:
            raise IdentityServiceError(
                f"asked for {account_id}, identity service returned {payload.account_id}"
            )
        return payload.to_profile()

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
