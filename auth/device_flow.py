"""
auth/device_flow.py -- OAuth2 device authorization grant (RFC 8628).

    start()  -> DeviceFlowSession (show user_code + verification_uri only)
    poll()   -> Pending | Completed | Declined | Expired | PollError

The coordinator never schedules itself. The caller (browser timer, CLI loop)
decides when to poll again, no faster than the session's interval, and stops
by simply not calling poll() any more. poll_until_done() is the ready-made
cancellable loop for in-process callers.

Terminal outcomes are remembered per device code for a while after expiry,
so a code that has expired, been declined or been redeemed never yields a
Completed on a later poll -- start() must be called again. Codes this
coordinator did not issue (another worker's, or made up) are still passed to
the provider, which refuses redeemed and expired codes itself, but leave no
record here. Records are pruned on every start() and poll(), and their
number is capped.

Only one poll per device code talks to the provider at a time. A poll that
arrives while another is in flight answers Pending without a network call.

Network failures talking to the provider raise UpstreamProtocolError and do
not end the flow; re-polling the same code is safe.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Union

import requests
from authlib.integrations.requests_client import OAuthError
from jose import JWTError, jwt

from auth.errors import NotConfigured, UpstreamProtocolError
from auth.identity import Principal, from_device_profile
from auth.models import DeviceFlowSession, FederatedProfile
from auth.oauth import SessionFactory, create_oauth_session
from auth.store import CredentialStore
from core.config import Settings

logger = logging.getLogger("opsdesk.auth.device")

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

_SLOW_DOWN_STEP = 5  # seconds added to the interval on "slow_down" (RFC 8628 3.5)
_RETAIN_SECONDS = 3600  # keep terminal records this long past expiry
_MAX_FLOWS = 10000  # oldest records are dropped beyond this


# ---------------------------------------------------------------------------
# Poll outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Pending:
    interval: int | None = None  # set when the provider asked us to slow down


@dataclass(frozen=True)
class Completed:
    principal: Principal
    profile: FederatedProfile = field(repr=False)


@dataclass(frozen=True)
class Declined:
    message: str = "User declined authorization"


@dataclass(frozen=True)
class Expired:
    message: str = "Device code expired"


@dataclass(frozen=True)
class PollError:
    message: str


PollOutcome = Union[Pending, Completed, Declined, Expired, PollError]


@dataclass
class _FlowRecord:
    expires_at: float
    interval: int
    terminal: PollOutcome | None = None


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class DeviceCodeFlowCoordinator:
    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        session_factory: SessionFactory = create_oauth_session,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._settings = settings
        self._session_factory = session_factory
        self._clock = clock
        self._flows: dict[str, _FlowRecord] = {}
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def _client_id(self) -> str:
        client_id = self._settings.microsoft_client_id
        if not client_id:
            logger.error("MICROSOFT_CLIENT_ID is not set; device code flow unavailable")
            raise NotConfigured(
                "Microsoft Client ID is not configured. Please add MICROSOFT_CLIENT_ID to the server settings."
            )
        return client_id

    def start(self) -> DeviceFlowSession:
        client_id = self._client_id()
        cfg = self._settings
        logger.info("Starting device code flow with client ID %s...", client_id[:8])
        session = self._session_factory(client_id, None, None, cfg.device_flow_scope)
        try:
            # No token exists yet; withhold_token stops authlib demanding one.
            resp = session.post(
                cfg.device_code_url,
                data={"client_id": client_id, "scope": cfg.device_flow_scope},
                timeout=cfg.http_timeout_seconds,
                withhold_token=True,
            )
            resp.raise_for_status()
            data = resp.json()
            flow = DeviceFlowSession(
                device_code=data["device_code"],
                user_code=data["user_code"],
                verification_uri=data["verification_uri"],
                expires_in_seconds=int(data["expires_in"]),
                poll_interval_seconds=int(data.get("interval", 5)),
                message=data.get("message"),
            )
        except requests.RequestException as exc:
            logger.warning("Device code request failed: %s", type(exc).__name__)
            raise UpstreamProtocolError("Failed to initiate device code flow") from exc
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Device code response had an unexpected shape")
            raise UpstreamProtocolError("Failed to initiate device code flow") from exc

        now = self._clock()
        with self._lock:
            self._prune(now)
            while len(self._flows) >= _MAX_FLOWS:
                del self._flows[next(iter(self._flows))]
            self._flows[flow.device_code] = _FlowRecord(
                expires_at=now + flow.expires_in_seconds,
                interval=flow.poll_interval_seconds,
            )
        logger.info("Device code flow initiated (expires in %ds)", flow.expires_in_seconds)
        return flow

    def poll(self, device_code: str) -> PollOutcome:
        """Ask the token endpoint once whether the user has finished.

        Pending leaves no trace. Every other outcome is recorded as terminal
        for a device code started here.
        """
        if not device_code:
            return PollError("device_code is required")
        with self._lock:
            now = self._clock()
            self._prune(now)
            record = self._flows.get(device_code)
            if record is not None and record.terminal is not None:
                return record.terminal
            if device_code in self._in_flight:
                return Pending()
            if record is not None and now >= record.expires_at:
                record.terminal = Expired()
                return record.terminal
            self._in_flight.add(device_code)
        try:
            return self._redeem(device_code)
        finally:
            with self._lock:
                self._in_flight.discard(device_code)

    def _redeem(self, device_code: str) -> PollOutcome:
        client_id = self._client_id()
        cfg = self._settings
        session = self._session_factory(client_id, None, None, cfg.device_flow_scope)
        try:
            token = session.fetch_token(
                cfg.device_token_url,
                grant_type=DEVICE_CODE_GRANT,
                device_code=device_code,
                timeout=cfg.http_timeout_seconds,
            )
        except OAuthError as exc:
            return self._from_provider_error(device_code, exc.error, exc.description)
        except requests.RequestException as exc:
            logger.warning("Device token poll failed: %s", type(exc).__name__)
            raise UpstreamProtocolError() from exc

        try:
            profile = self._store_profile(session, token)
        except (requests.RequestException, KeyError, TypeError, ValueError):
            logger.exception("Device flow succeeded but the user profile could not be loaded")
            return self._finish(device_code, PollError("Failed to get user information"))

        logger.info("Device flow user authenticated (profile %d)", profile.id)
        return self._finish(device_code, Completed(principal=from_device_profile(profile), profile=profile))

    def _from_provider_error(self, device_code: str, error: str | None, description: str | None) -> PollOutcome:
        if error == "authorization_pending":
            return Pending()
        if error == "slow_down":
            with self._lock:
                record = self._flows.get(device_code)
                if record is not None:
                    record.interval += _SLOW_DOWN_STEP
                    return Pending(interval=record.interval)
            return Pending()
        if error in ("authorization_declined", "access_denied"):
            return self._finish(device_code, Declined())
        if error in ("expired_token", "code_expired"):
            return self._finish(device_code, Expired())
        logger.warning("Device token poll returned provider error %r", error)
        return self._finish(device_code, PollError(description or error or "Device authorization failed"))

    def _finish(self, device_code: str, outcome: PollOutcome) -> PollOutcome:
        """Record a terminal outcome. A redeemed code is reported as used on re-poll.

        The first terminal outcome for a code wins; unknown codes are not recorded.
        """
        stored = PollError("Device code already used") if isinstance(outcome, Completed) else outcome
        with self._lock:
            record = self._flows.get(device_code)
            if record is not None and record.terminal is None:
                record.terminal = stored
        return outcome

    def _store_profile(self, session, token: dict) -> FederatedProfile:
        cfg = self._settings
        resp = session.get(cfg.graph_me_url, timeout=cfg.http_timeout_seconds)
        resp.raise_for_status()
        user = resp.json()

        expires_in = int(token.get("expires_in") or 3600)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        profile = FederatedProfile(
            external_subject_id=str(user["id"]),
            email=user.get("mail") or user.get("userPrincipalName"),
            display_name=user.get("displayName"),
            tenant_id=_tenant_of(token),
            access_token=token.get("access_token"),
            refresh_token=token.get("refresh_token"),
            token_expires_at=expires_at.isoformat(),
        )
        return self._store.upsert_federated_profile(profile)

    def _prune(self, now: float) -> None:
        stale = [code for code, rec in self._flows.items() if now > rec.expires_at + _RETAIN_SECONDS]
        for code in stale:
            del self._flows[code]


def _tenant_of(token: dict) -> str:
    """Tenant id from the ID token's tid claim, or "unknown".

    The token came straight from the token endpoint over TLS; the claim is
    only stored as a label, never used for authorization.
    """
    id_token = token.get("id_token")
    if id_token:
        try:
            tid = jwt.get_unverified_claims(id_token).get("tid")
        except JWTError:
            tid = None
        if tid:
            return str(tid)
    return str(token.get("tid") or "unknown")


# ---------------------------------------------------------------------------
# Cancellable poll loop
# ---------------------------------------------------------------------------


def poll_until_done(
    coordinator: DeviceCodeFlowCoordinator,
    flow: DeviceFlowSession,
    cancel: threading.Event,
) -> PollOutcome | None:
    """Poll until a non-Pending outcome, or return None once cancel is set.

    cancel is checked before every network call, and the wait between polls
    is cancel.wait(), so setting it from another thread stops the loop within
    one round trip.
    """
    interval = flow.poll_interval_seconds
    while not cancel.is_set():
        try:
            outcome = coordinator.poll(flow.device_code)
        except UpstreamProtocolError:
            logger.warning("Device token poll failed; retrying in %ds", interval)
        else:
            if not isinstance(outcome, Pending):
                return outcome
            if outcome.interval:
                interval = outcome.interval
        if cancel.wait(interval):
            break
    return None
