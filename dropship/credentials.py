"""Supplier OAuth token lifecycle.

The single ``supplier_tokens`` row is shared by every request. Readers get a
token through :meth:`CredentialStore.get_valid_token`, which refreshes lazily
when the token is within five minutes of expiry. Refreshes are serialized by a
process-wide lock and the row is re-read under the lock, so two requests racing
on an expiring token spend the refresh token only once.

The optional :class:`TokenRefreshScheduler` only warms the token ahead of use;
it is started by the application lifespan, never on import.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
import structlog

from dropship.config import Settings, get_settings
from dropship.database import SessionLocal
from dropship.errors import CredentialError, NotConnected, RefreshFailed
from dropship.models import SINGLETON_TOKEN_ID, SupplierToken, as_utc, utcnow

logger = structlog.get_logger(__name__)

REFRESH_MARGIN = timedelta(minutes=5)

# one token row per deployment, so one lock
_refresh_lock = threading.Lock()


@dataclass(frozen=True)
class TokenInfo:
    access_token: str
    refresh_token: str
    expires_at: datetime

    @classmethod
    def from_row(cls, row: SupplierToken) -> "TokenInfo":
        return cls(row.access_token, row.refresh_token, as_utc(row.expires_at))


def _expiry_from(data: dict, now: datetime) -> datetime:
    if data.get("expires_in") is not None:
        return now + timedelta(seconds=int(data["expires_in"]))
    if data.get("expire_time") is not None:
        # absolute epoch milliseconds
        return datetime.fromtimestamp(int(data["expire_time"]) / 1000, tz=timezone.utc)
    raise RefreshFailed("response carries no expiry")


class CredentialStore:
    def __init__(self, session_factory=None, http: httpx.Client | None = None,
                 settings: Settings | None = None, clock=utcnow):
        self._session_factory = session_factory
        self._http = http
        self._settings = settings
        self._clock = clock

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def _session(self):
        return (self._session_factory or SessionLocal)()

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=30.0)
        return self._http

    def _expiring(self, row: SupplierToken) -> bool:
        return as_utc(row.expires_at) - self._clock() < REFRESH_MARGIN

    def get_valid_token(self) -> str:
        """Return a bearer token with at least five minutes of life left."""
        with self._session() as db:
            row = db.get(SupplierToken, SINGLETON_TOKEN_ID)
            if row is None:
                raise NotConnected()
            if not self._expiring(row):
                return row.access_token

        return self.refresh(force=False).access_token

    def store_token(self, access_token: str, refresh_token: str, expires_in_seconds: int) -> TokenInfo:
        expires_at = self._clock() + timedelta(seconds=int(expires_in_seconds))
        with _refresh_lock, self._session() as db:
            row = db.get(SupplierToken, SINGLETON_TOKEN_ID)
            if row is None:
                row = SupplierToken(id=SINGLETON_TOKEN_ID)
                db.add(row)
            row.access_token = access_token
            row.refresh_token = refresh_token
            row.expires_at = expires_at
            db.commit()
            info = TokenInfo.from_row(row)

        logger.info("supplier_token_stored", expires_at=expires_at.isoformat())
        return info

    def refresh(self, force: bool = True) -> TokenInfo:
        """Exchange the stored refresh token for a new access token.

        With ``force=False`` the refresh is skipped when another caller already
        renewed the token while we waited for the lock.
        """
        with _refresh_lock, self._session() as db:
            row = db.get(SupplierToken, SINGLETON_TOKEN_ID)
            if row is None:
                raise NotConnected()
            if not force and not self._expiring(row):
                return TokenInfo.from_row(row)

            data = self._request_refresh(row.refresh_token)
            now = self._clock()
            row.access_token = data["access_token"]
            row.refresh_token = data.get("refresh_token") or row.refresh_token
            row.expires_at = _expiry_from(data, now)
            db.commit()
            info = TokenInfo.from_row(row)

        logger.info("supplier_token_refreshed", expires_at=info.expires_at.isoformat())
        return info

    def status(self) -> dict:
        with self._session() as db:
            row = db.get(SupplierToken, SINGLETON_TOKEN_ID)
            if row is None:
                return {"connected": False, "expires_at": None}
            expires_at = as_utc(row.expires_at)
            return {
                "connected": True,
                "expires_at": expires_at.isoformat(),
                "expired": expires_at <= self._clock(),
            }

    def _request_refresh(self, refresh_token: str) -> dict:
        settings = self.settings
        params = {
            "client_id": settings.ali_app_key or "",
            "client_secret": settings.ali_app_secret or "",
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = self._client().post(settings.ali_refresh_url, data=params)
        except httpx.HTTPError as exc:
            raise RefreshFailed(f"transport error: {exc}") from exc

        if not response.is_success:
            raise RefreshFailed(f"HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise RefreshFailed("non-JSON response") from exc

        if not isinstance(data, dict):
            raise RefreshFailed("unexpected response shape")
        error = data.get("error_msg") or data.get("error_description") or data.get("error")
        if error:
            raise RefreshFailed(str(error))
        if not data.get("access_token"):
            raise RefreshFailed("no access_token in response")
        return data


class TokenRefreshScheduler:
    """Background warm-up of the supplier token.

    Calls ``get_valid_token`` every ``interval`` seconds; the lazy check there
    does the actual refresh. Keep the interval under five minutes.
    """

    def __init__(self, store: CredentialStore, interval: float):
        self.store = store
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="supplier-token-refresh", daemon=True
        )
        self._thread.start()
        logger.info("token_refresh_scheduler_started", interval=self.interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None

    def tick(self) -> None:
        try:
            self.store.get_valid_token()
        except NotConnected:
            logger.debug("token_refresh_skipped_not_connected")
        except CredentialError:
            logger.exception("token_refresh_failed")

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.tick()


credential_store = CredentialStore()
