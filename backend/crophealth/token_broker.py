"""
OAuth token broker for the Copernicus Data Space (Sentinel Hub) APIs.

Holds one access token per process and refreshes it with a
client-credentials grant when it is missing or about to expire.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx

from .config import Settings, settings, validate_cdse_env
from .errors import ConfigurationError, TransportError
from .logger_config import get_logger
from .utils import utcnow

logger = get_logger("token_broker")

# Lifetime floor so a provider answering expires_in=0 still yields a usable token
MIN_TOKEN_LIFETIME_SECONDS = 30


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: datetime

    def is_valid(self, now: datetime, skew_seconds: int) -> bool:
        return self.expires_at > now + timedelta(seconds=skew_seconds)


class TokenBroker:
    """
    Cached bearer token source.

    Refreshes are single-flight: concurrent callers that find the token
    expired wait on one lock, and only the first one hits the token endpoint.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config or settings
        self._transport = transport
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    @property
    def cached_token(self) -> Optional[AccessToken]:
        return self._token

    def invalidate(self) -> None:
        self._token = None

    async def get_token(self) -> str:
        """Get or refresh the OAuth token."""
        missing = validate_cdse_env(self._config)
        if missing:
            raise ConfigurationError(missing, source="cdse_token")

        skew = self._config.token_skew_seconds
        token = self._token
        if token and token.is_valid(self._clock(), skew):
            return token.value

        async with self._lock:
            # Another coroutine may have refreshed while we waited
            token = self._token
            if token and token.is_valid(self._clock(), skew):
                return token.value

            self._token = await self._request_token()
            return self._token.value

    async def _request_token(self) -> AccessToken:
        issued_at = self._clock()
        try:
            async with httpx.AsyncClient(
                timeout=self._config.default_timeout_seconds,
                transport=self._transport
            ) as client:
                response = await client.post(
                    self._config.cdse_token_url,
                    data={
                        "grant_type": "client_credentials",
                        "client_id": self._config.cdse_client_id,
                        "client_secret": self._config.cdse_client_secret
                    },
                    headers={"Content-Type": "application/x-www-form-urlencoded"}
                )
        except httpx.TimeoutException as e:
            raise TransportError(f"CDSE token request timed out: {e}", source="cdse_token")
        except httpx.HTTPError as e:
            raise TransportError(f"CDSE token request failed: {e}", source="cdse_token")

        if response.status_code >= 400:
            raise TransportError(
                f"CDSE token request failed ({response.status_code}): {response.text[:200]}",
                source="cdse_token",
                status=response.status_code
            )

        try:
            data = response.json()
        except ValueError:
            raise TransportError("CDSE token response was not JSON.", source="cdse_token")

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise TransportError("CDSE token response did not include access_token.", source="cdse_token")

        try:
            expires_in = int(data.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600
        lifetime = max(MIN_TOKEN_LIFETIME_SECONDS, expires_in - 30)

        logger.info(f"CDSE OAuth token refreshed, valid for {lifetime}s")
        return AccessToken(value=access_token, expires_at=issued_at + timedelta(seconds=lifetime))


# Process-wide broker; tests and alternative deployments pass their own
token_broker = TokenBroker()
