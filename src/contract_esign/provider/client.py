"""
SignNow HTTP client.

Handles authentication, timeouts and retries. Knows nothing about
contracts; the adapter builds requests and interprets responses.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Optional

import requests

from ..exceptions import ProviderRejected, ProviderUnavailable


logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://api.signnow.com"
EVAL_URL = "https://api-eval.signnow.com"

DEFAULT_TIMEOUT = 30.0
DEFAULT_TOKEN_LIFETIME = 3600
TOKEN_REFRESH_MARGIN = 60.0


def get_base_url() -> str:
    """Resolve the API base URL from SIGNNOW_BASE_URL or SIGNNOW_ENV."""
    explicit = os.environ.get("SIGNNOW_BASE_URL")
    if explicit:
        return explicit.rstrip("/")
    if os.environ.get("SIGNNOW_ENV", "production").lower() == "eval":
        return EVAL_URL
    return PRODUCTION_URL


@dataclass
class SignNowCredentials:
    """Password-grant credentials. Never logged."""
    client_id: str
    client_secret: str
    username: str
    password: str

    @classmethod
    def from_env(cls) -> "SignNowCredentials":
        return cls(
            client_id=os.environ.get("SIGNNOW_CLIENT_ID", ""),
            client_secret=os.environ.get("SIGNNOW_CLIENT_SECRET", ""),
            username=os.environ.get("SIGNNOW_USERNAME", ""),
            password=os.environ.get("SIGNNOW_PASSWORD", ""),
        )

    def __repr__(self) -> str:
        return f"SignNowCredentials(client_id={self.client_id!r}, username={self.username!r})"


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for retryable provider failures."""
    max_attempts: int = 3
    backoff: float = 1.0
    multiplier: float = 2.0
    max_backoff: float = 10.0
    retry_statuses: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return min(self.backoff * (self.multiplier ** (attempt - 1)), self.max_backoff)


@dataclass
class AccessToken:
    """Bearer token with an expiry on the monotonic clock."""
    value: str
    expires_at: float

    def is_valid(self, now: float, margin: float = TOKEN_REFRESH_MARGIN) -> bool:
        return now < self.expires_at - margin


class SignNowClient:
    """
    Authenticated JSON client for the SignNow REST API.

    The bearer token is cached and refreshed shortly before it expires.
    A 401 drops the cached token and the request is retried once with a
    fresh one. Timeouts, connection errors, 429 and 5xx responses raise
    ProviderUnavailable after the retry policy is exhausted; any other
    4xx raises ProviderRejected immediately.
    """

    def __init__(
        self,
        credentials: SignNowCredentials,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._credentials = credentials
        self._base_url = (base_url or get_base_url()).rstrip("/")
        self._timeout = timeout
        self._retry = retry_policy or RetryPolicy()
        self._session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self._token: Optional[AccessToken] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    # ========== Authentication ==========

    def authenticate(self) -> AccessToken:
        """Obtain a new bearer token with the password grant."""
        response = self.request(
            "POST",
            "/oauth2/token",
            data={
                "grant_type": "password",
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret,
                "username": self._credentials.username,
                "password": self._credentials.password,
            },
            authenticated=False,
        )
        body = self._decode(response, "POST", "/oauth2/token")
        if not isinstance(body, dict) or not body.get("access_token"):
            raise ProviderRejected(
                "Token response carried no access token",
                status_code=response.status_code,
            )
        lifetime = float(body.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        self._token = AccessToken(value=body["access_token"], expires_at=self._clock() + lifetime)
        logger.info(f"Authenticated with SignNow at {self._base_url}")
        return self._token

    def access_token(self) -> str:
        """Return a valid bearer token, authenticating if needed."""
        if self._token is None or not self._token.is_valid(self._clock()):
            self.authenticate()
        return self._token.value

    def invalidate_token(self) -> None:
        self._token = None

    # ========== Requests ==========

    def _send(
        self,
        method: str,
        path: str,
        authenticated: bool,
        **kwargs: Any,
    ) -> requests.Response:
        headers = {"Accept": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self.access_token()}"
        return self._session.request(
            method,
            f"{self._base_url}{path}",
            headers=headers,
            timeout=self._timeout,
            **kwargs,
        )

    @staticmethod
    def _payload(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    def request(
        self,
        method: str,
        path: str,
        authenticated: bool = True,
        **kwargs: Any,
    ) -> requests.Response:
        """
        Send a request with retries.

        Args:
            method: HTTP method.
            path: Path below the base URL, starting with "/".
            authenticated: Whether to send the bearer token.
            **kwargs: Passed to ``requests.Session.request`` (json, data, files).

        Raises:
            ProviderUnavailable: Retryable failure persisted past the policy.
            ProviderRejected: The provider refused the request.
        """
        attempt = 1
        reauthenticated = False
        while True:
            try:
                response = self._send(method, path, authenticated, **kwargs)
            except requests.Timeout as e:
                error = ProviderUnavailable(
                    f"{method} {path} timed out after {self._timeout}s",
                    details={"error": str(e)},
                )
            except requests.ConnectionError as e:
                error = ProviderUnavailable(
                    f"{method} {path} could not connect",
                    details={"error": str(e)},
                )
            else:
                status = response.status_code
                if status == 401 and authenticated and not reauthenticated:
                    logger.info(f"{method} {path} returned 401; refreshing access token")
                    self.invalidate_token()
                    reauthenticated = True
                    continue
                if status < 400:
                    return response
                payload = self._payload(response)
                if status not in self._retry.retry_statuses:
                    raise ProviderRejected(
                        f"{method} {path} rejected with status {status}",
                        status_code=status,
                        payload=payload,
                    )
                error = ProviderUnavailable(
                    f"{method} {path} failed with status {status}",
                    status_code=status,
                    details={"payload": payload},
                )

            if attempt >= self._retry.max_attempts:
                logger.error(f"Giving up on {method} {path} after {attempt} attempt(s): {error.message}")
                raise error
            delay = self._retry.delay(attempt)
            logger.warning(
                f"{method} {path} attempt {attempt} failed ({error.message}); retrying in {delay:.1f}s"
            )
            self._sleep(delay)
            attempt += 1

    def _decode(self, response: requests.Response, method: str, path: str) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderRejected(
                f"{method} {path} returned a non-JSON body",
                status_code=response.status_code,
                payload=response.text[:500],
            ) from e

    def request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and decode its JSON body (empty body -> {})."""
        response = self.request(method, path, **kwargs)
        return self._decode(response, method, path)

    def close(self) -> None:
        self._session.close()
