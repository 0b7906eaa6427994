"""Grant token handling for the bKash tokenized checkout API.

One ``TokenManager`` is owned by each gateway client. It caches the current
``id_token``, refreshes it shortly before expiry and makes sure only one
grant/refresh call is on the wire at a time: threads that need a token while
one is being fetched wait for that call instead of starting their own.
"""
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass

import requests

from .exceptions import AuthenticationError

logger = logging.getLogger(__name__)

GRANT_PATH = "/tokenized/checkout/token/grant"
REFRESH_PATH = "/tokenized/checkout/token/refresh"
SUCCESS_CODE = "0000"
EXPIRY_BUFFER_SECONDS = 60
DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class Token:
    id_token: str
    refresh_token: str
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at - EXPIRY_BUFFER_SECONDS


class TokenManager:
    def __init__(self, *, base_url, app_key, app_secret, username, password,
                 session=None, timeout=30, clock=time.monotonic):
        self.base_url = base_url.rstrip("/")
        self.app_key = app_key
        self.app_secret = app_secret
        self.username = username
        self.password = password
        self.session = session or requests.Session()
        self.timeout = timeout
        self._clock = clock
        self._token: Token | None = None
        self._lock = threading.Lock()
        self._inflight: Future | None = None

    @property
    def token(self) -> Token | None:
        return self._token

    def invalidate(self) -> None:
        self._token = None

    def get_valid_token(self) -> str:
        token = self._token
        if token and token.is_fresh(self._clock()):
            return token.id_token
        return self._single_flight(self._renew, reuse_fresh=True)

    def grant_token(self) -> str:
        return self._single_flight(self._grant)

    def refresh_token(self) -> str:
        return self._single_flight(self._refresh)

    # ---------- single flight ----------
    def _single_flight(self, fn, reuse_fresh=False) -> str:
        with self._lock:
            inflight = self._inflight
            if inflight is None:
                token = self._token
                if reuse_fresh and token and token.is_fresh(self._clock()):
                    return token.id_token
                inflight = self._inflight = Future()
                leader = True
            else:
                leader = False

        if not leader:
            logger.debug("bKash token request already in flight, waiting for it")
            return inflight.result()

        try:
            token = fn()
        except BaseException as exc:
            inflight.set_exception(exc)
            raise
        else:
            inflight.set_result(token.id_token)
            return token.id_token
        finally:
            with self._lock:
                self._inflight = None

    def _renew(self) -> Token:
        if self._token and self._token.refresh_token:
            return self._refresh()
        return self._grant()

    # ---------- HTTP ----------
    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "username": self.username,
            "password": self.password,
        }

    def _store(self, data: dict) -> Token:
        try:
            expires_in = float(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            logger.warning("bKash token response has unusable expires_in=%r, assuming %ss",
                           data.get("expires_in"), DEFAULT_EXPIRES_IN)
            expires_in = DEFAULT_EXPIRES_IN
        token = Token(
            id_token=data["id_token"],
            refresh_token=data.get("refresh_token") or "",
            expires_at=self._clock() + expires_in,
        )
        self._token = token
        return token

    def _grant(self) -> Token:
        logger.info("bKash grant token request endpoint=%s username=%s", GRANT_PATH, self.username)
        body = {"app_key": self.app_key, "app_secret": self.app_secret}
        try:
            resp = self.session.post(self.base_url + GRANT_PATH, json=body, headers=self._headers(), timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("bKash grant token FAILED: %s", e)
            raise AuthenticationError(f"Failed to authenticate with bKash: {e}") from e

        logger.info(
            "bKash grant token response statusCode=%s statusMessage=%s expires_in=%s",
            data.get("statusCode"), data.get("statusMessage"), data.get("expires_in"),
        )
        if str(data.get("statusCode", SUCCESS_CODE)) != SUCCESS_CODE or not data.get("id_token"):
            raise AuthenticationError(
                f"bKash token grant failed: {data.get('statusMessage') or data.get('msg') or 'no id_token'} "
                f"(code: {data.get('statusCode')})"
            )
        return self._store(data)

    def _refresh(self) -> Token:
        current = self._token
        if not current or not current.refresh_token:
            return self._grant()

        logger.info("bKash refresh token request")
        body = {"app_key": self.app_key, "app_secret": self.app_secret, "refresh_token": current.refresh_token}
        try:
            resp = self.session.post(self.base_url + REFRESH_PATH, json=body, headers=self._headers(), timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("bKash token refresh error, falling back to fresh grant: %s", e)
            return self._grant()

        logger.info("bKash refresh token response statusCode=%s", data.get("statusCode"))
        if str(data.get("statusCode", SUCCESS_CODE)) != SUCCESS_CODE or not data.get("id_token"):
            logger.warning("bKash token refresh failed, falling back to fresh grant")
            return self._grant()
        return self._store(data)
