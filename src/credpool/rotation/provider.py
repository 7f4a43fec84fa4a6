"""Host-facing interface of the pool.

A request pipeline asks for a credential before each outbound call and reports
how the call went. `PoolAuth` wires both steps into an httpx client.
"""

from collections.abc import AsyncGenerator, Generator, Mapping
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import TYPE_CHECKING, Protocol

import httpx
from structlog import get_logger


if TYPE_CHECKING:
    from credpool.rotation.pool import Credential, RateLimitEvent


logger = get_logger(__name__)

# Longest response body excerpt carried in an outcome
_MAX_ERROR_TEXT = 1000


@dataclass
class RequestOutcome:
    """Result of one outbound call as seen by the host."""

    status_code: int
    error_text: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    refresh_token: str | None = None  # Identifies the account that served the call

    @property
    def ok(self) -> bool:
        return self.status_code < HTTPStatus.BAD_REQUEST

    def describe(self) -> str:
        """Failure text for rate-limit detection: status code plus body."""
        if self.error_text:
            return f"{self.status_code} {self.error_text}"
        return str(self.status_code)

    @classmethod
    def from_response(
        cls,
        response: httpx.Response,
        refresh_token: str | None = None,
    ) -> "RequestOutcome":
        """Build an outcome from a response whose body has been read."""
        error_text = None
        if not response.is_success:
            try:
                error_text = response.text[:_MAX_ERROR_TEXT]
            except httpx.ResponseNotRead:
                error_text = response.reason_phrase
        return cls(
            status_code=response.status_code,
            error_text=error_text,
            headers=dict(response.headers),
            refresh_token=refresh_token,
        )


class CredentialProvider(Protocol):
    """What a request pipeline needs from a credential pool."""

    async def select_credential(self, now: int | None = None) -> "Credential": ...

    async def report_outcome(self, outcome: RequestOutcome) -> "RateLimitEvent | None": ...


class PoolAuth(httpx.Auth):
    """httpx auth flow backed by a credential provider.

    Usage:
        async with httpx.AsyncClient(auth=PoolAuth(pool)) as client:
            await client.post(url, json=payload)
    """

    requires_response_body = True

    def __init__(
        self,
        provider: CredentialProvider,
        project_header: str | None = None,
    ):
        """Initialize the auth flow.

        Args:
            provider: Pool to select credentials from and report outcomes to
            project_header: Header carrying the account's project id, if any
        """
        self._provider = provider
        self._project_header = project_header

    def sync_auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("PoolAuth requires an httpx.AsyncClient")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        credential = await self._provider.select_credential()
        request.headers["Authorization"] = f"Bearer {credential.access_token}"
        if self._project_header and credential.project_id:
            request.headers[self._project_header] = credential.project_id

        response = yield request

        outcome = RequestOutcome.from_response(response, refresh_token=credential.refresh_token)
        event = await self._provider.report_outcome(outcome)
        if event is not None:
            logger.info(
                "request_rate_limited",
                account=event.account.display_name,
                delay_seconds=event.delay_ms // 1000,
            )
