from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, TypeVar

import httpx

from vmanage_prom_exporter.models import Device, DeviceInterface, DeviceSystemStatus


LOGGER = logging.getLogger("vmanage_prom_exporter.client")

LOGIN_PATH = "/j_security_check"
TOKEN_PATH = "/dataservice/client/token"
LOGOUT_PATH = "/logout"
LOGOUT_REDIRECT_PATH = "/welcome.html"
SESSION_COOKIE = "JSESSIONID"
CSRF_HEADER = "X-XSRF-TOKEN"

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)


class VManageError(Exception):
    pass


class AuthError(VManageError):
    pass


class FetchError(VManageError):
    def __init__(self, status: int, body: str, message: str | None = None) -> None:
        self.status = status
        self.body = body
        super().__init__(message or f"{status}: {body}")


class TransportError(VManageError):
    pass


class CancelledError(VManageError):
    pass


class Deadline:
    def __init__(self, timeout_seconds: float | None, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = None if timeout_seconds is None else clock() + timeout_seconds
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        # observed before each request and lock wait; a request already on the wire is bounded by expiry only
        self._cancelled.set()

    def remaining(self) -> float | None:
        if self._cancelled.is_set():
            return 0.0
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0


class PayloadShape(Protocol[T_co]):
    def from_payload(self, payload: dict[str, Any]) -> T_co: ...


@dataclass(frozen=True)
class Session:
    cookie: str
    csrf_token: str


@dataclass(frozen=True)
class AuthenticatedRequest:
    base_url: str
    session: Session
    headers: dict[str, str] = field(default_factory=dict)

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"


@dataclass(frozen=True)
class InterfaceListOptions:
    device_id: str | None = None
    vpn_id: str | None = None
    ifname: str | None = None
    af_type: str | None = None

    def params(self) -> dict[str, str]:
        raw = {
            "vpn-id": self.vpn_id,
            "ifname": self.ifname,
            "af-type": self.af_type,
            "deviceId": self.device_id,
        }
        return {key: value for key, value in raw.items() if value}


@dataclass(frozen=True)
class SystemStatusListOptions:
    device_id: str | None = None

    def params(self) -> dict[str, str]:
        return {"deviceId": self.device_id} if self.device_id else {}


class VManageClient:
    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        verify_tls: bool = True,
        request_timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self._password = password
        self.verify_tls = verify_tls
        self.request_timeout_seconds = request_timeout_seconds
        self._http = httpx.Client(
            verify=verify_tls,
            timeout=request_timeout_seconds,
            transport=transport,
        )
        self._session: Session | None = None
        self._lock = threading.RLock()

    @property
    def session(self) -> Session | None:
        return self._session

    def close(self) -> None:
        self._http.close()

    def _request_timeout(self, deadline: Deadline | None, action: str) -> float:
        timeout = self.request_timeout_seconds
        remaining = deadline.remaining() if deadline is not None else None
        if remaining is None:
            return timeout
        if remaining <= 0.0:
            raise CancelledError(f"deadline exceeded before {action}")
        return min(timeout, remaining)

    def _acquire(self, deadline: Deadline | None) -> None:
        remaining = deadline.remaining() if deadline is not None else None
        if remaining is None:
            self._lock.acquire()
            return
        if remaining <= 0.0 or not self._lock.acquire(timeout=remaining):
            raise CancelledError("deadline exceeded waiting for login")

    def login(self, *, deadline: Deadline | None = None) -> Session:
        self._acquire(deadline)
        try:
            return self._login_locked(deadline)
        finally:
            self._lock.release()

    def _login_locked(self, deadline: Deadline | None) -> Session:
        if self._session is not None:
            try:
                self.logout(deadline=deadline)
            except AuthError as error:
                LOGGER.warning("discarding previous session failed: %s", error)

        LOGGER.info("logging in to %s as %s", self.base_url, self.username)
        try:
            login_response = self._http.post(
                self.base_url + LOGIN_PATH,
                data={"j_username": self.username, "j_password": self._password},
                timeout=self._request_timeout(deadline, "login"),
            )
        except httpx.HTTPError as error:
            if deadline is not None and deadline.expired():
                raise CancelledError("deadline exceeded during login") from error
            raise AuthError(f"login request failed: {error}") from error

        cookie = login_response.cookies.get(SESSION_COOKIE)
        # keep the session out of the shared jar; it travels as an explicit header
        self._http.cookies.clear()
        if login_response.status_code != httpx.codes.OK or not cookie:
            raise AuthError(f"login failed with status {login_response.status_code}")

        try:
            token_response = self._http.get(
                self.base_url + TOKEN_PATH,
                headers={"Cookie": f"{SESSION_COOKIE}={cookie}"},
                timeout=self._request_timeout(deadline, "token request"),
            )
        except httpx.HTTPError as error:
            if deadline is not None and deadline.expired():
                raise CancelledError("deadline exceeded during token request") from error
            raise AuthError(f"token request failed: {error}") from error
        if token_response.status_code != httpx.codes.OK:
            raise AuthError(f"token request failed with status {token_response.status_code}")
        if not token_response.text:
            raise AuthError("empty CSRF token")

        session = Session(cookie=cookie, csrf_token=token_response.text)
        self._session = session
        LOGGER.info("login to %s successful", self.base_url)
        return session

    def authenticated_request(self, *, deadline: Deadline | None = None) -> AuthenticatedRequest:
        session = self._session
        if session is None:
            self._acquire(deadline)
            try:
                session = self._session
                if session is None:
                    session = self._login_locked(deadline)
            finally:
                self._lock.release()
        return AuthenticatedRequest(
            base_url=self.base_url,
            session=session,
            headers={
                "Cookie": f"{SESSION_COOKIE}={session.cookie}",
                CSRF_HEADER: session.csrf_token,
            },
        )

    def invalidate(self, session: Session | None = None) -> None:
        with self._lock:
            # a late rejection of an older session must not drop a newer login
            if session is None or self._session is session:
                self._session = None

    def logout(self, *, deadline: Deadline | None = None) -> None:
        with self._lock:
            session = self._session
            self._session = None
            if session is None:
                return

            try:
                response = self._http.get(
                    self.base_url + LOGOUT_PATH,
                    params={"nocache": str(secrets.randbelow(10**9))},
                    headers={
                        "Cookie": f"{SESSION_COOKIE}={session.cookie}",
                        CSRF_HEADER: session.csrf_token,
                    },
                    follow_redirects=True,
                    timeout=self._request_timeout(deadline, "logout"),
                )
            except httpx.HTTPError as error:
                raise AuthError(f"logout request failed: {error}") from error
            finally:
                self._http.cookies.clear()

            if response.url.path != LOGOUT_REDIRECT_PATH:
                raise AuthError(f"logout did not redirect to {LOGOUT_REDIRECT_PATH}")

    def fetch_collection(
        self,
        endpoint: str,
        options: InterfaceListOptions | SystemStatusListOptions | None,
        shape: PayloadShape[T],
        *,
        deadline: Deadline | None = None,
    ) -> list[T]:
        request = self.authenticated_request(deadline=deadline)
        timeout = self._request_timeout(deadline, f"fetching {endpoint}")
        params = options.params() if options is not None else None

        try:
            response = self._http.get(
                request.url(endpoint),
                params=params or None,
                headers=request.headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as error:
            if deadline is not None and deadline.expired():
                raise CancelledError(f"deadline exceeded while fetching {endpoint}") from error
            raise TransportError(f"timeout fetching {endpoint}: {error}") from error
        except httpx.HTTPError as error:
            raise TransportError(f"error fetching {endpoint}: {error}") from error

        if response.is_error:
            if response.status_code in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN):
                self.invalidate(request.session)
            raise FetchError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as error:
            raise FetchError(response.status_code, response.text, f"invalid JSON from {endpoint}") from error

        items = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise FetchError(response.status_code, response.text, f"missing data list in {endpoint} response")
        return [shape.from_payload(item) for item in items if isinstance(item, dict)]

    def devices(self, *, deadline: Deadline | None = None) -> list[Device]:
        return self.fetch_collection("/dataservice/device", None, Device, deadline=deadline)

    def device_interfaces(
        self,
        options: InterfaceListOptions,
        *,
        synced: bool = True,
        deadline: Deadline | None = None,
    ) -> list[DeviceInterface]:
        endpoint = "/dataservice/device/interface/synced" if synced else "/dataservice/device/interface"
        return self.fetch_collection(endpoint, options, DeviceInterface, deadline=deadline)

    def device_system_status(
        self,
        options: SystemStatusListOptions,
        *,
        synced: bool = True,
        deadline: Deadline | None = None,
    ) -> list[DeviceSystemStatus]:
        endpoint = "/dataservice/device/system/synced/status" if synced else "/dataservice/device/system/status"
        return self.fetch_collection(endpoint, options, DeviceSystemStatus, deadline=deadline)
