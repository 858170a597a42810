from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import requests
from requests.adapters import HTTPAdapter

import config
from exceptions import AuthError
from utils import first_of

logger = logging.getLogger("phonepe_client")
logger.setLevel(config.LOG_LEVEL)

DEFAULT_TOKEN_SCHEME = "O-Bearer"

TOKEN_PATHS = (
    "access_token",
    "data.access_token",
    "encrypted_access_token",
    "token",
    "data.token",
)
SCHEME_PATHS = ("token_type", "data.token_type", "tokenType", "data.tokenType")
EXPIRES_AT_PATHS = ("expires_at", "data.expires_at", "expiresAt", "session_expires_at")
ERROR_DESCRIPTION_PATHS = ("error_description", "data.error_description", "message", "error")


def build_session() -> requests.Session:
    # no Retry: every outbound call is attempted exactly once
    s = requests.Session()
    adapter = HTTPAdapter(pool_connections=10, pool_maxsize=20)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


def _to_iso(epoch_seconds: float, tz=timezone.utc) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=tz).isoformat()


@dataclass(frozen=True)
class AuthToken:
    value: str
    scheme: str
    expires_at: float

    def is_valid(self, now: float, margin: float = 0) -> bool:
        return bool(self.value) and now < self.expires_at - margin

    @property
    def authorization(self) -> str:
        return f"{self.scheme} {self.value}"


class AuthClient:
    """
    Client-credentials exchange against the PhonePe identity endpoint.

    The token envelope has changed between API versions, so the token and its
    scheme are resolved through TOKEN_PATHS / SCHEME_PATHS in priority order.
    """

    def __init__(
        self,
        token_url: str = config.PHONEPE_TOKEN_URL,
        client_id: Optional[str] = config.CLIENT_ID,
        client_secret: Optional[str] = config.CLIENT_SECRET,
        client_version: str = config.CLIENT_VERSION,
        session: Optional[requests.Session] = None,
        timeout: float = config.HTTP_TIMEOUT,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.client_version = client_version
        self.session = session or build_session()
        self.timeout = timeout

    def fetch_token(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        client_version: Optional[str] = None,
    ) -> AuthToken:
        client_id = client_id or self.client_id
        client_secret = client_secret or self.client_secret
        client_version = client_version or self.client_version

        if not client_id or not client_secret:
            raise AuthError("PhonePe client_id or client_secret missing in environment")

        payload = {
            "client_id": client_id,
            "client_version": client_version,
            "client_secret": client_secret,
            "grant_type": "client_credentials",
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        logger.info("Requesting PhonePe token from %s", self.token_url)
        try:
            resp = self.session.post(self.token_url, data=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.exception("PhonePe token request failed")
            raise AuthError(f"PhonePe token request failed: {e}")

        try:
            j = resp.json()
        except ValueError:
            logger.error("PhonePe token returned non-json: %s", resp.text[:1200])
            raise AuthError(f"PhonePe token fetch failed: non-json response {resp.status_code}")

        if not 200 <= resp.status_code < 300:
            description = first_of(j, ERROR_DESCRIPTION_PATHS)
            logger.error("PhonePe token endpoint returned %s: %s", resp.status_code, j)
            raise AuthError(f"PhonePe auth failed ({resp.status_code}): {description or 'no description'}")

        return self._parse_token(j)

    def _parse_token(self, resp_json: Dict[str, Any]) -> AuthToken:
        access_token = first_of(resp_json, TOKEN_PATHS)
        if not access_token or not isinstance(access_token, str):
            description = first_of(resp_json, ERROR_DESCRIPTION_PATHS)
            logger.error("PhonePe token response missing access_token: keys=%s", list(resp_json or {}))
            msg = "PhonePe token response missing access token"
            if description:
                msg = f"{msg}: {description}"
            raise AuthError(msg)

        scheme = first_of(resp_json, SCHEME_PATHS, DEFAULT_TOKEN_SCHEME)

        # 0 when the gateway does not say; TokenCache stamps the effective expiry
        reported = first_of(resp_json, EXPIRES_AT_PATHS)
        try:
            expires_at = int(reported) if reported is not None else 0
        except (TypeError, ValueError):
            expires_at = 0

        logger.info("PhonePe token fetched scheme=%s reported_expires_at=%s", scheme, expires_at)
        return AuthToken(value=access_token, scheme=scheme, expires_at=expires_at)


class TokenCache:
    """
    Holds at most one AuthToken for the process.

    Refresh is single-flight: callers that find the cache cold queue on the
    lock and re-check once they hold it, so only the first one hits the
    OAuth endpoint.
    """

    def __init__(
        self,
        auth_client: AuthClient,
        ttl: int = config.TOKEN_TTL_SEC,
        safety_margin: int = config.TOKEN_SAFETY_MARGIN_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self.auth_client = auth_client
        self.ttl = ttl
        self.safety_margin = safety_margin
        self.clock = clock
        self._token: Optional[AuthToken] = None
        self._lock = threading.Lock()

    def _cached(self) -> Optional[AuthToken]:
        token = self._token
        if token and token.is_valid(self.clock(), self.safety_margin):
            return token
        return None

    def get_token(self) -> AuthToken:
        token = self._cached()
        if token:
            logger.debug("Using cached PhonePe token, expires_at=%s", token.expires_at)
            return token

        with self._lock:
            token = self._cached()
            if token:
                return token
            self._token = None
            try:
                fetched = self.auth_client.fetch_token()
            except AuthError:
                logger.error("PhonePe token refresh failed; cache left empty")
                raise

            expires_at = self.clock() + self.ttl
            # the gateway's own expiry wins when it is earlier than our TTL
            if fetched.expires_at and fetched.expires_at < expires_at:
                expires_at = fetched.expires_at
            token = replace(fetched, expires_at=expires_at)
            self._token = token
            logger.info("Stored PhonePe token expires_at=%s (iso=%s)", expires_at, _to_iso(expires_at))
            return token

    def clear(self) -> None:
        with self._lock:
            self._token = None

    def info(self) -> Dict[str, Any]:
        t = self._token
        return {
            "has_token": bool(t),
            "scheme": t.scheme if t else None,
            "expires_at": t.expires_at if t else None,
            "expires_at_iso": _to_iso(t.expires_at) if t else None,
            "valid": bool(t and t.is_valid(self.clock(), self.safety_margin)),
        }
