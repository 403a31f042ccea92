# snap2nbd/vmware/session.py
# -*- coding: utf-8 -*-
"""
Self-healing vSphere session.

One SessionManager owns one authenticated pyvmomi service instance and hands
it to the resolver / lifecycle helpers. Shared state (handle + authenticated
flag) sits behind a reader/writer lock:

  - get_connection() takes the shared side
  - connect() / reconnect() / disconnect() take the exclusive side
  - settings-derived accessors and is_connected() take no lock, so they
    answer while a login is still retrying

Key behaviour:
  ✅ login retried retry_attempts+1 times, fixed delay, delay wakes on cancel
  ✅ post-login verification via sessionManager.currentSession (not retried)
  ✅ stale handle -> exactly one reconnect even with concurrent callers
  ✅ logout is best-effort; local state is always cleared
"""
from __future__ import annotations

import contextlib
import http.client
import logging
import ssl
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator, Optional, TypeVar

from pyVim.connect import SmartStubAdapter
from pyVmomi import vim, vmodl

from ..config.settings import VMwareSettings
from ..core.context import CallContext, background
from ..core.cred import VsphereCreds
from ..core.exceptions import (
    AuthenticationError,
    OperationTimeout,
    Snap2NbdError,
    VMwareError,
    VSphereConnectionError,
)
from ..core.rwlock import RWLock

T = TypeVar("T")

PROBE_TIMEOUT = 5.0
LOGOUT_TIMEOUT = 10.0

_AUTH_FAULTS = (vim.fault.InvalidLogin, vim.fault.NotAuthenticated, vim.fault.NoPermission)
_TRANSPORT_ERRORS = (OSError, ssl.SSLError, http.client.HTTPException)


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Connection:
    """Immutable handle to one authenticated service instance."""
    si: Any = field(repr=False)
    content: Any = field(repr=False)
    host: str
    port: int
    user: str


@dataclass(frozen=True)
class ConnectionDetails:
    """What the export process needs to open its own VDDK connection."""
    host: str
    port: int
    user: str
    password: str = field(repr=False)
    insecure: bool = False


@dataclass(frozen=True)
class SessionInfo:
    user: str
    key: str
    login_time: Optional[datetime] = None

    @classmethod
    def from_vim(cls, s: Any) -> "SessionInfo":
        return cls(
            user=str(getattr(s, "userName", "") or ""),
            key=str(getattr(s, "key", "") or ""),
            login_time=getattr(s, "loginTime", None),
        )


# ---------------------------------------------------------------------------
# Remote error translation
# ---------------------------------------------------------------------------

def fault_message(exc: BaseException) -> str:
    """pyvmomi faults carry the useful text in .msg; str() is a full data dump."""
    msg = getattr(exc, "msg", None)
    if msg:
        return str(msg)
    return str(exc) or type(exc).__name__


def classify_remote_error(op: str, exc: BaseException, **context: Any) -> Snap2NbdError:
    if isinstance(exc, Snap2NbdError):
        return exc
    ctx = dict(context, op=op)
    text = f"{op}: {fault_message(exc)}"
    if isinstance(exc, _AUTH_FAULTS):
        return AuthenticationError(msg=text, cause=exc, context=ctx)
    if isinstance(exc, _TRANSPORT_ERRORS):
        return VSphereConnectionError(msg=text, cause=exc, context=ctx)
    return VMwareError(msg=text, cause=exc, context=ctx)


@contextlib.contextmanager
def remote_call(op: str, **context: Any) -> Iterator[None]:
    """Translate pyvmomi / transport failures raised inside the block into project errors."""
    try:
        yield
    except Snap2NbdError:
        raise
    except (vmodl.MethodFault, *_TRANSPORT_ERRORS) as e:
        raise classify_remote_error(op, e, **context) from e


def _bounded(fn: Callable[[], T], timeout: float, op: str) -> T:
    """
    Run a blocking remote call with a hard deadline. The worker is a daemon
    thread; if it overruns, it is abandoned (the socket timeout ends it).
    """
    box: dict = {}

    def run() -> None:
        try:
            box["value"] = fn()
        except BaseException as e:  # re-raised in the caller's thread
            box["error"] = e

    t = threading.Thread(target=run, name=f"vsphere-{op}", daemon=True)
    t.start()
    t.join(timeout)
    if t.is_alive():
        raise OperationTimeout(msg=f"{op}: no reply within {timeout:g}s", context={"op": op})
    if "error" in box:
        raise box["error"]
    return box["value"]


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------

class SessionManager:
    """
    Thread-safe owner of the vSphere session.

    The four underscore "seams" (_open_service_instance, _login,
    _current_session, _logout) are the only places that talk to pyvmomi
    directly; everything else is bookkeeping around them.
    """

    def __init__(self, settings: VMwareSettings, logger: logging.Logger):
        self._settings = settings
        self.logger = logger
        self._lock = RWLock()
        self._conn: Optional[Connection] = None
        self._authenticated = False

    # ---------------------------
    # Context manager
    # ---------------------------

    def __enter__(self) -> "SessionManager":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.disconnect()
        return False

    # ---------------------------
    # Accessors (lock-free; settings are immutable)
    # ---------------------------

    @property
    def settings(self) -> VMwareSettings:
        return self._settings

    @property
    def vcenter_url(self) -> str:
        return self._settings.vcenter_url

    def credentials(self) -> VsphereCreds:
        s = self._settings
        return VsphereCreds(host=s.host, user=s.username, password=s.password)

    def connection_details(self) -> ConnectionDetails:
        s = self._settings
        host, port, _path = s.endpoint
        return ConnectionDetails(host=host, port=port, user=s.username, password=s.password, insecure=s.insecure)

    def is_connected(self) -> bool:
        # _conn is published before _authenticated and cleared after it
        return self._authenticated and self._conn is not None

    # ---------------------------
    # pyvmomi seams
    # ---------------------------

    def _ssl_context(self) -> ssl.SSLContext:
        if self._settings.insecure:
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            return ctx
        return ssl.create_default_context()

    def _open_service_instance(self) -> Any:
        host, port, path = self._settings.endpoint
        stub = SmartStubAdapter(
            host=host,
            port=port,
            path=path,
            sslContext=self._ssl_context(),
            httpConnectionTimeout=self._settings.request_timeout,
        )
        return vim.ServiceInstance("ServiceInstance", stub)

    def _login(self, si: Any) -> Any:
        content = si.RetrieveContent()
        content.sessionManager.Login(self._settings.username, self._settings.password)
        return content

    def _current_session(self, content: Any) -> Optional[SessionInfo]:
        s = content.sessionManager.currentSession
        return SessionInfo.from_vim(s) if s is not None else None

    def _logout(self, content: Any) -> None:
        content.sessionManager.Logout()

    # ---------------------------
    # Connect / Disconnect
    # ---------------------------

    def connect(self, ctx: Optional[CallContext] = None) -> Connection:
        """Log in (with retries) unless a verified session already exists."""
        cctx = (ctx or background()).child(self._settings.connection_timeout)
        with self._lock.write_locked():
            if self._authenticated and self._conn is not None:
                return self._conn
            return self._connect_locked(cctx)

    def _connect_locked(self, ctx: CallContext) -> Connection:
        s = self._settings
        host, port, _path = s.endpoint
        attempts = s.retry_attempts + 1
        last: Optional[BaseException] = None
        content = si = None

        for attempt in range(1, attempts + 1):
            ctx.check("connect")
            try:
                si = self._open_service_instance()
                content = self._login(si)
                break
            except (vmodl.MethodFault, *_TRANSPORT_ERRORS) as e:
                last = e
                self.logger.warning(
                    "vSphere login to %s:%s failed (attempt %d/%d): %s", host, port, attempt, attempts, fault_message(e)
                )
                if attempt < attempts:
                    ctx.sleep(s.retry_delay, "connect")
        else:
            err_cls = AuthenticationError if isinstance(last, _AUTH_FAULTS) else VSphereConnectionError
            raise err_cls(
                msg=f"login failed after {attempts} attempts: {fault_message(last) if last else 'unknown error'}",
                cause=last,
                context={"op": "connect", "host": host, "attempts": attempts},
            )

        try:
            info = self._current_session(content)
        except (vmodl.MethodFault, *_TRANSPORT_ERRORS) as e:
            self._logout_quietly(content)
            raise AuthenticationError(
                msg=f"session verification failed: {fault_message(e)}",
                cause=e,
                context={"op": "connect", "host": host},
            ) from e
        if info is None:
            self._logout_quietly(content)
            raise AuthenticationError(
                msg="session verification failed: no current session after login",
                context={"op": "connect", "host": host},
            )

        conn = Connection(si=si, content=content, host=host, port=port, user=s.username)
        self._conn = conn
        self._authenticated = True
        self.logger.info("Connected to vSphere: %s:%s as %s", host, port, info.user or s.username)
        return conn

    def disconnect(self, ctx: Optional[CallContext] = None) -> None:
        """Best-effort logout; never raises for logout failures."""
        with self._lock.write_locked():
            self._disconnect_locked()

    def _disconnect_locked(self) -> None:
        conn = self._conn
        self._authenticated = False
        self._conn = None
        if conn is None:
            return
        self._logout_quietly(conn.content)
        self.logger.info("Disconnected from vSphere: %s:%s", conn.host, conn.port)

    def _logout_quietly(self, content: Any) -> None:
        try:
            _bounded(lambda: self._logout(content), LOGOUT_TIMEOUT, "logout")
        except (vmodl.MethodFault, OperationTimeout, *_TRANSPORT_ERRORS) as e:
            self.logger.warning("vSphere logout failed (ignored): %s", fault_message(e))

    def reconnect(self, ctx: Optional[CallContext] = None, *, stale: Optional[Connection] = None) -> Connection:
        """
        Disconnect + connect as one exclusive step.

        ``stale`` is the handle the caller found dead. If another caller has
        already replaced it, the fresh handle is returned without a second
        reconnect.
        """
        cctx = (ctx or background()).child(self._settings.connection_timeout)
        with self._lock.write_locked():
            if stale is not None and self._authenticated and self._conn is not None and self._conn is not stale:
                self.logger.debug("vSphere session already re-established by another caller")
                return self._conn
            self.logger.info("Re-establishing vSphere session to %s", self._settings.host)
            self._disconnect_locked()
            return self._connect_locked(cctx)

    # ---------------------------
    # Liveness
    # ---------------------------

    def _probe(self, conn: Connection, timeout: float) -> SessionInfo:
        info = _bounded(lambda: self._current_session(conn.content), timeout, "probe")
        if info is None:
            raise VSphereConnectionError(msg="vSphere session is no longer valid", context={"op": "probe", "host": conn.host})
        return info

    def get_connection(self, ctx: Optional[CallContext] = None) -> Connection:
        """A usable handle: probe the current one, reconnect once if it is dead."""
        ctx = ctx or background()
        with self._lock.read_locked():
            conn = self._conn if self._authenticated else None
        if conn is None:
            return self.connect(ctx)
        ctx.check("get_connection")
        timeout = self._settings.request_timeout
        r = ctx.remaining()
        if r is not None:
            timeout = min(timeout, r)
        try:
            self._probe(conn, timeout)
            return conn
        except (vmodl.MethodFault, VSphereConnectionError, OperationTimeout, *_TRANSPORT_ERRORS) as e:
            self.logger.warning("vSphere session check failed (%s); reconnecting", fault_message(e))
            return self.reconnect(ctx, stale=conn)

    def health_check(self, ctx: Optional[CallContext] = None) -> SessionInfo:
        ctx = ctx or background()
        conn = self.get_connection(ctx)
        try:
            return self._probe(conn, PROBE_TIMEOUT)
        except (vmodl.MethodFault, VSphereConnectionError, OperationTimeout, *_TRANSPORT_ERRORS) as e:
            self.logger.warning("vSphere health check failed (%s); forcing reconnect", fault_message(e))
            conn = self.reconnect(ctx, stale=conn)
            return self._probe(conn, PROBE_TIMEOUT)
