import time
import enum
import logging
import threading
from typing import Any, Callable, NamedTuple, Optional, Tuple
from urllib.parse import urlparse

import requests
import urllib3

from netipam.config import REQ_TIMEOUT
from netipam.api.schemas import SettingsSnapshot
from .control import UpdaterControl, wait

logger = logging.getLogger(__name__)

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

LOGIN_TTL_SEC = 15 * 60
FORBIDDEN_COOLDOWN_SEC = 30.0
RETRY_BACKOFF_SEC = 2.0
MAX_BODY_CHARS = 600


class ControllerError(Exception):
    pass


class ControllerConfigError(ControllerError):
    pass


class ControllerHTTPError(ControllerError):
    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SessionState(str, enum.Enum):
    LOGGED_OUT = "LoggedOut"
    LOGGING_IN = "LoggingIn"
    ACTIVE = "Active"


class Runtime(NamedTuple):
    base_url: str
    site: str
    auth_mode: str
    username: str
    password: str
    api_key: str
    identity: Tuple[str, str, str]


def safe_body(resp: requests.Response) -> str:
    try:
        text = resp.text
    except (ValueError, RuntimeError):
        return "(unreadable body)"
    if not text or not text.strip():
        return "(empty)"
    if len(text) <= MAX_BODY_CHARS:
        return text
    return text[:MAX_BODY_CHARS] + "..."


class ControllerClient:
    """Authenticated access to the network controller.

    Session mode logs in with username/password, keeps the cookie jar and the
    CSRF token for ``LOGIN_TTL_SEC``, and on a 401/403 forces exactly one
    re-login followed by one retry. API-key mode sends a static header and
    never re-logs in. A 403 starts a cooldown during which login attempts
    sleep instead of hitting the controller again.

    Logins and requests are serialized by two separate locks; the session
    state is only touched while holding them.
    """

    def __init__(self, settings: Callable[[], SettingsSnapshot],
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float, Optional[threading.Event]], None] = wait,
                 timeout: float = REQ_TIMEOUT):
        self._settings = settings
        self._http = session or requests.Session()
        self._http.verify = False
        self._clock = clock
        self._sleep = sleep
        self._timeout = timeout

        self._login_lock = threading.Lock()
        self._request_lock = threading.Lock()

        self.state = SessionState.LOGGED_OUT
        self._csrf_token: Optional[str] = None
        self._last_login: Optional[float] = None
        self._cooldown_until: Optional[float] = None
        self._identity: Optional[Tuple[str, str, str]] = None

    # ---------------- configuration ----------------

    def _config(self) -> Runtime:
        s = self._settings()

        base_url = (s.controller_base_url or "").strip()
        site = (s.controller_site or "").strip() or "default"
        auth_mode = s.controller_auth_mode
        username = (s.controller_username or "").strip()
        password = s.controller_password or ""
        api_key = (s.controller_api_key or "").strip()

        if not base_url:
            raise ControllerConfigError("Controller base URL is not set.")
        parsed = urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ControllerConfigError(f"Controller base URL is invalid: '{base_url}'")
        if auth_mode == "ApiKey":
            if not api_key:
                raise ControllerConfigError("Controller API key is not set.")
        else:
            if not username:
                raise ControllerConfigError("Controller username is not set.")
            if not password.strip():
                raise ControllerConfigError("Controller password is not set.")

        return Runtime(base_url.rstrip("/"), site, auth_mode, username, password, api_key,
                       (base_url.lower(), username, site.lower()))

    def _sync_identity(self, cfg: Runtime):
        """Drop the session when the controller identity changed. Caller holds the login lock."""
        if cfg.identity != self._identity:
            if self._identity is not None:
                logger.info("Controller connection settings changed; resetting session.")
            self._reset_session()
            self._identity = cfg.identity

    def _reset_session(self):
        self.state = SessionState.LOGGED_OUT
        self._csrf_token = None
        self._last_login = None
        self._cooldown_until = None
        self._http.cookies.clear()

    def _session_fresh(self, now: float) -> bool:
        return (
            self.state == SessionState.ACTIVE
            and self._last_login is not None
            and now - self._last_login < LOGIN_TTL_SEC
        )

    def _start_cooldown(self, what: str):
        self._cooldown_until = self._clock() + FORBIDDEN_COOLDOWN_SEC
        logger.warning(f"Controller {what} returned 403; cooldown applied for {FORBIDDEN_COOLDOWN_SEC:.0f}s.")

    # ---------------- login ----------------

    def login(self, force: bool = False, cancel: Optional[threading.Event] = None):
        cfg = self._config()
        if cfg.auth_mode == "ApiKey":
            with self._login_lock:
                self._sync_identity(cfg)
            return

        # A changed identity goes straight to the locked path, which resets first.
        same_identity = cfg.identity == self._identity
        now = self._clock()
        if not force and same_identity and self._cooldown_until is not None and now < self._cooldown_until:
            remaining = self._cooldown_until - now
            logger.warning(f"Controller login delayed due to cooldown ({remaining:.0f}s).")
            self._sleep(remaining, cancel)
            now = self._clock()

        if not force and same_identity and self._session_fresh(now):
            return

        with self._login_lock:
            cfg = self._config()
            self._sync_identity(cfg)
            if cfg.auth_mode == "ApiKey":
                return
            if not force and self._session_fresh(self._clock()):
                return

            self.state = SessionState.LOGGING_IN
            self._csrf_token = None
            try:
                resp = self._http.post(
                    f"{cfg.base_url}/api/auth/login",
                    json={"username": cfg.username, "password": cfg.password, "remember": True},
                    timeout=self._timeout,
                )
            except requests.RequestException:
                self.state = SessionState.LOGGED_OUT
                raise

            if not resp.ok:
                self.state = SessionState.LOGGED_OUT
                body = safe_body(resp)
                if resp.status_code == 403:
                    self._start_cooldown("login")
                raise ControllerHTTPError(
                    f"Controller login failed: {resp.status_code} {resp.reason}. Body: {body}",
                    resp.status_code, body,
                )

            self._csrf_token = resp.headers.get("X-CSRF-Token") or None
            self._last_login = self._clock()
            self._cooldown_until = None
            self.state = SessionState.ACTIVE
            logger.info(f"Controller login OK (CSRF={bool(self._csrf_token)}).")

    # ---------------- requests ----------------

    def get_active_clients(self, cancel: Optional[threading.Event] = None) -> Any:
        return self._get_site("stat/sta", cancel)

    def get_known_clients(self, cancel: Optional[threading.Event] = None) -> Any:
        return self._get_site("rest/user", cancel)

    def get_devices(self, cancel: Optional[threading.Event] = None) -> Any:
        return self._get_site("stat/device", cancel)

    def get_networks(self, cancel: Optional[threading.Event] = None) -> Any:
        return self._get_site("rest/networkconf", cancel)

    def _get_site(self, endpoint: str, cancel: Optional[threading.Event]) -> Any:
        with self._request_lock:
            self.login(force=False, cancel=cancel)
            cfg = self._config()
            path = f"/proxy/network/api/s/{cfg.site}/{endpoint}"
            try:
                return self._get_json(cfg, path)
            except ControllerHTTPError as e:
                if e.status_code not in (401, 403) or cfg.auth_mode == "ApiKey":
                    raise
                logger.warning(f"Controller request got {e.status_code}; forcing re-login and retrying once: {path}")

            self.login(force=True, cancel=cancel)
            self._sleep(RETRY_BACKOFF_SEC, cancel)
            return self._get_json(self._config(), path)

    def _get_json(self, cfg: Runtime, path: str) -> Any:
        headers = {"Accept": "application/json"}
        if cfg.auth_mode == "ApiKey":
            headers["X-API-KEY"] = cfg.api_key
        else:
            if self._csrf_token:
                headers["X-CSRF-Token"] = self._csrf_token
            headers["X-Requested-With"] = "XMLHttpRequest"

        url = f"{cfg.base_url}{path}"
        resp = self._http.get(url, headers=headers, timeout=self._timeout)
        if not resp.ok:
            body = safe_body(resp)
            if resp.status_code == 403:
                self._start_cooldown("GET")
            raise ControllerHTTPError(
                f"Controller GET failed: {resp.status_code} {resp.reason} for {url}. Body: {body}",
                resp.status_code, body,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise ControllerError(f"Controller returned invalid JSON for {url}: {e}") from e


def check_connection(client: ControllerClient, control: UpdaterControl,
                    cancel: Optional[threading.Event] = None) -> Tuple[bool, str]:
    """One active-client fetch through the shared gate; never raises."""
    try:
        control.run(lambda: client.get_active_clients(cancel), cancel)
    except Exception as e:
        logger.warning(f"Controller connection test failed: {e}")
        return False, str(e) or e.__class__.__name__
    return True, "Controller connection OK."
