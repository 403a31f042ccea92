# snap2nbd/vmware/nbdkit_session.py
# -*- coding: utf-8 -*-
"""
nbdkit + VDDK export supervision.

An ExportSession is one nbdkit process exporting one snapshot disk, read-only,
on a private unix socket:

    nbdkit -U <sock> --foreground --exit-with-parent -r vddk \
        server=<host> user=<user> password=+<file> vm=moref=<vm> \
        snapshot=<snap> file=<base path> libdir=<vddk root> [thumbprint=<fp>]

States:
    NEW -> STARTING -> READY
              |
              +-> FAILED (process exited before the socket appeared)
    any -> CLOSED (close() is idempotent)

Key behaviour:
  ✅ stdout/stderr drained by reader threads into bounded tail buffers
  ✅ liveness checked on every readiness poll (crash seen within one interval)
  ✅ password handed over in a 0600 file, never on the command line / in logs
  ✅ close(): SIGTERM, bounded grace, SIGKILL, socket + password file removed
"""
from __future__ import annotations

import collections
import enum
import hashlib
import logging
import os
import socket
import ssl
import subprocess
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Dict, List, Mapping, Optional, Sequence

from ..config.settings import ExportSettings
from ..core.context import CallContext, background
from ..core.exceptions import ExportProcessError, ExportTimeoutError, OperationTimeout
from ..core.utils import U
from .session import ConnectionDetails

_VIX_LIB_NAMES = (
    "libvixDiskLib.so",
    "libvixDiskLib.so.8",
    "libvixDiskLib.so.7",
    "libvixDiskLib.so.6",
)

VDDK_ROOT_GUESSES = (
    "/opt/vmware-vix-disklib",
    "/opt/vmware-vix-disklib-distrib",
    "/usr/lib64/vmware-vix-disklib",
    "/usr/local/vmware-vix-disklib",
)

READER_JOIN_TIMEOUT = 1.0
DEBUG_TAIL_EVERY = 10


class ExportState(enum.Enum):
    NEW = "new"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Output capture
# ---------------------------------------------------------------------------

class _TailBuffer:
    """Thread-safe ring buffer of the last N output lines."""

    def __init__(self, max_lines: int = 200):
        self.max_lines = max(1, int(max_lines))
        self._lines: "collections.deque[str]" = collections.deque(maxlen=self.max_lines)
        self._lock = threading.Lock()

    def add(self, line: str) -> None:
        if not line:
            return
        with self._lock:
            self._lines.append(line)

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines).strip()


def _pump(stream: IO[bytes], tail: _TailBuffer, logger: logging.Logger, prefix: str) -> None:
    for raw in iter(stream.readline, b""):
        line = U.strip_ansi(U.to_text(raw)).rstrip()
        if line:
            tail.add(line)
            logger.debug("%s %s", prefix, line)
    stream.close()


# ---------------------------------------------------------------------------
# TLS fingerprint / VDDK discovery
# ---------------------------------------------------------------------------

def normalize_thumbprint(tp: str, digest: str = "sha1") -> str:
    size = 40 if digest == "sha1" else 64
    raw = (tp or "").strip().replace(" ", "").replace(":", "").lower()
    if len(raw) != size or any(ch not in "0123456789abcdef" for ch in raw):
        raise ValueError(f"Invalid thumbprint (expected {digest} {size} hex chars): {tp!r}")
    return ":".join(raw[i : i + 2] for i in range(0, size, 2)).upper()


def compute_server_thumbprint(host: str, port: int = 443, *, digest: str = "sha1", timeout: float = 10.0) -> str:
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    with socket.create_connection((host, port), timeout=timeout) as sock:
        with ctx.wrap_socket(sock, server_hostname=host) as ssock:
            der = ssock.getpeercert(binary_form=True)
    return normalize_thumbprint(hashlib.new(digest, der).hexdigest(), digest)


def _has_vix_lib(p: Path) -> bool:
    return p.is_dir() and any((p / n).exists() for n in _VIX_LIB_NAMES)


def find_vddk_root(base: Path) -> Optional[Path]:
    """
    nbdkit's libdir= wants the VDDK root (the directory holding lib64/),
    so accept either the root or its lib64 directory.
    """
    base = base.expanduser()
    if _has_vix_lib(base / "lib64"):
        return base
    if base.name == "lib64" and _has_vix_lib(base):
        return base.parent
    nested = base / "vmware-vix-disklib-distrib"
    if _has_vix_lib(nested / "lib64"):
        return nested
    return None


def resolve_vddk_libdir(configured: Optional[str], environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    for source, value in (("vddk_libdir", configured), ("VDDK_LIBDIR", env.get("VDDK_LIBDIR"))):
        v = (value or "").strip()
        if not v:
            continue
        found = find_vddk_root(Path(v))
        if found:
            return found
        raise ExportProcessError(
            msg=f"{source}={v!r} invalid: no lib64/libvixDiskLib.so under that path",
            context={"op": "resolve_vddk_libdir", "path": v},
        )
    for g in VDDK_ROOT_GUESSES:
        found = find_vddk_root(Path(g))
        if found:
            return found
    raise ExportProcessError(
        msg=f"VMware VDDK not found (looked in {', '.join(VDDK_ROOT_GUESSES)}); set --vddk-libdir or VDDK_LIBDIR",
        context={"op": "resolve_vddk_libdir"},
    )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class ExportSession:
    def __init__(
        self,
        argv: Sequence[str],
        socket_path: Path,
        logger: logging.Logger,
        *,
        settings: Optional[ExportSettings] = None,
        env: Optional[Dict[str, str]] = None,
        cleanup_paths: Sequence[Path] = (),
        label: str = "",
    ):
        self.argv = list(argv)
        self.socket_path = Path(socket_path)
        self.logger = logger
        self.settings = settings or ExportSettings()
        self.env = env
        self.label = label or self.socket_path.name
        self._cleanup_paths = list(cleanup_paths)
        self._stdout = _TailBuffer(self.settings.tail_lines)
        self._stderr = _TailBuffer(self.settings.tail_lines)
        self._readers: List[threading.Thread] = []
        self._proc: Optional[subprocess.Popen] = None
        self._state = ExportState.NEW
        self._lock = threading.Lock()

    def __enter__(self) -> "ExportSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    # ---------------------------
    # Introspection
    # ---------------------------

    @property
    def url(self) -> str:
        return f"nbd+unix:///?socket={self.socket_path}"

    @property
    def state(self) -> ExportState:
        with self._lock:
            return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.poll() if self._proc is not None else None

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def output(self) -> str:
        parts = []
        err = self._stderr.text()
        out = self._stdout.text()
        if err:
            parts.append(f"--- stderr (tail) ---\n{err}")
        if out:
            parts.append(f"--- stdout (tail) ---\n{out}")
        return "\n".join(parts)

    def _set_state(self, state: ExportState) -> None:
        with self._lock:
            if self._state is not ExportState.CLOSED:
                self._state = state

    # ---------------------------
    # Start / readiness
    # ---------------------------

    def start(self, ctx: Optional[CallContext] = None) -> None:
        ctx = ctx or background()
        with self._lock:
            if self._state is not ExportState.NEW:
                raise ExportProcessError(msg=f"export session already {self._state.value}", context={"socket": str(self.socket_path)})
            self._state = ExportState.STARTING

        self.logger.info("Starting nbdkit export %s on %s", self.label, self.socket_path)
        self.logger.debug("Running: %s", U.pretty_cmd(self.argv))
        try:
            self._proc = subprocess.Popen(
                self.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.env,
            )
        except OSError as e:
            self._set_state(ExportState.FAILED)
            raise ExportProcessError(
                msg=f"failed to launch {self.argv[0]}: {e}",
                cause=e,
                context={"op": "export_start", "socket": str(self.socket_path)},
            ) from e

        for stream, tail, prefix in ((self._proc.stdout, self._stdout, "[nbdkit]"), (self._proc.stderr, self._stderr, "[nbdkit:err]")):
            t = threading.Thread(target=_pump, args=(stream, tail, self.logger, prefix), name=f"nbdkit-reader-{self.label}", daemon=True)
            t.start()
            self._readers.append(t)

        ctx.sleep(self.settings.start_grace, "export start")
        if not self.is_alive():
            self._raise_exited("nbdkit exited during startup")

    def _join_readers(self) -> None:
        for t in self._readers:
            t.join(READER_JOIN_TIMEOUT)

    def _raise_exited(self, what: str) -> None:
        self._set_state(ExportState.FAILED)
        self._join_readers()
        rc = self.returncode
        output = self.output()
        msg = f"{what} (rc={rc})"
        if output:
            msg = f"{msg}: {output}"
        raise ExportProcessError(
            msg=msg,
            context={"op": "export", "socket": str(self.socket_path), "returncode": rc, "output": output},
        )

    def wait_for_ready(self, timeout: Optional[float] = None, ctx: Optional[CallContext] = None) -> str:
        """Block until the socket appears; return the NBD URL."""
        limit = self.settings.ready_timeout if timeout is None else timeout
        wctx = (ctx or background()).child(limit)
        state = self.state
        if state is ExportState.READY:
            return self.url
        if state is not ExportState.STARTING:
            raise ExportProcessError(msg=f"cannot wait for readiness: session is {state.value}", context={"socket": str(self.socket_path)})

        polls = 0
        try:
            while True:
                if not self.is_alive():
                    self._raise_exited("nbdkit exited before the export became ready")
                if self.socket_path.is_socket():
                    wctx.sleep(self.settings.ready_grace, "export readiness")
                    if not self.is_alive():
                        self._raise_exited("nbdkit exited right after creating its socket")
                    self._set_state(ExportState.READY)
                    self.logger.info("nbdkit export %s ready: %s", self.label, self.url)
                    return self.url
                polls += 1
                if polls % DEBUG_TAIL_EVERY == 0:
                    self.logger.debug("Waiting for %s (%d polls); output so far:\n%s", self.socket_path, polls, self.output() or "<none>")
                wctx.sleep(self.settings.poll_interval, "export readiness")
        except ExportTimeoutError:
            raise
        except OperationTimeout as e:
            output = self.output()
            msg = f"nbdkit socket {self.socket_path} not ready after {limit:g}s"
            if output:
                msg = f"{msg}: {output}"
            raise ExportTimeoutError(
                msg=msg,
                cause=e,
                context={"op": "export_wait", "socket": str(self.socket_path), "output": output},
            ) from e

    # ---------------------------
    # Teardown
    # ---------------------------

    def close(self) -> None:
        """Idempotent; never raises."""
        with self._lock:
            if self._state is ExportState.CLOSED:
                return
            self._state = ExportState.CLOSED

        proc = self._proc
        if proc is not None and proc.poll() is None:
            self.logger.debug("Stopping nbdkit export %s (pid %s)", self.label, proc.pid)
            try:
                proc.terminate()
                proc.wait(timeout=self.settings.close_grace)
            except subprocess.TimeoutExpired:
                self.logger.warning(
                    "nbdkit (pid %s) ignored SIGTERM for %gs; killing", proc.pid, self.settings.close_grace
                )
                try:
                    proc.kill()
                    proc.wait(timeout=self.settings.close_grace)
                except (OSError, subprocess.TimeoutExpired) as e:
                    self.logger.error("Failed to kill nbdkit (pid %s): %s", proc.pid, e)
            except OSError as e:
                self.logger.warning("Failed to stop nbdkit (pid %s): %s", proc.pid, e)
        self._join_readers()

        U.safe_unlink(self.socket_path, self.logger)
        for p in self._cleanup_paths:
            U.safe_unlink(p, self.logger)
        self.logger.info("nbdkit export %s closed", self.label)


# ---------------------------------------------------------------------------
# Exporter (argv construction + all-or-nothing open)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExportTarget:
    vm_id: str
    snapshot_id: Optional[str]
    disk_path: str


class NBDKitExporter:
    def __init__(self, settings: ExportSettings, logger: logging.Logger):
        self.settings = settings
        self.logger = logger

    def new_socket_path(self) -> Path:
        return Path(self.settings.socket_dir) / f"nbdkit-{uuid.uuid4()}.sock"

    def thumbprint(self, details: ConnectionDetails) -> Optional[str]:
        """
        Configured fingerprint, else fetched from the server. On fetch failure
        return None: nbdkit then connects without thumbprint= (unverified TLS).
        """
        digest = self.settings.thumbprint_digest
        if self.settings.thumbprint:
            try:
                return normalize_thumbprint(self.settings.thumbprint, digest)
            except ValueError as e:
                raise ExportProcessError(msg=str(e), context={"op": "thumbprint"}) from e
        try:
            tp = compute_server_thumbprint(details.host, details.port, digest=digest)
        except (OSError, ssl.SSLError, ValueError) as e:
            self.logger.warning(
                "Could not fetch TLS thumbprint of %s:%s (%s); nbdkit will run without thumbprint verification",
                details.host, details.port, e,
            )
            return None
        self.logger.debug("Server %s thumbprint (%s): %s", details.host, digest, tp)
        return tp

    def build_argv(
        self,
        target: ExportTarget,
        details: ConnectionDetails,
        *,
        socket_path: Path,
        password_file: Path,
        libdir: Path,
        thumbprint: Optional[str],
    ) -> List[str]:
        argv = [
            self.settings.nbdkit_path,
            "-U", str(socket_path),
            "--foreground",
            "--exit-with-parent",
            "-r",
            "vddk",
            f"server={details.host}",
            f"user={details.user}",
            f"password=+{password_file}",
            f"vm=moref={target.vm_id}",
        ]
        if target.snapshot_id:
            argv.append(f"snapshot={target.snapshot_id}")
        argv += [f"file={target.disk_path}", f"libdir={libdir}"]
        if details.port != 443:
            argv.append(f"port={details.port}")
        if thumbprint:
            argv.append(f"thumbprint={thumbprint}")
        if self.settings.transports:
            argv.append(f"transports={self.settings.transports}")
        return argv

    @staticmethod
    def child_env(libdir: Path, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = dict(os.environ if base is None else base)
        if not env.get("LD_LIBRARY_PATH"):
            env["LD_LIBRARY_PATH"] = str(libdir / "lib64")
        return env

    def prepare(self, target: ExportTarget, details: ConnectionDetails) -> ExportSession:
        """Build an unstarted session (password file already written)."""
        libdir = resolve_vddk_libdir(self.settings.vddk_libdir)
        tp = self.thumbprint(details)
        sock = self.new_socket_path()
        pwfile = U.write_secret_file(Path(self.settings.socket_dir), "nbdkit-pw", details.password)
        argv = self.build_argv(target, details, socket_path=sock, password_file=pwfile, libdir=libdir, thumbprint=tp)
        return ExportSession(
            argv,
            sock,
            self.logger,
            settings=self.settings,
            env=self.child_env(libdir),
            cleanup_paths=[pwfile],
            label=f"{target.vm_id}:{target.disk_path}",
        )

    def open(
        self,
        target: ExportTarget,
        details: ConnectionDetails,
        ctx: Optional[CallContext] = None,
        *,
        wait: bool = True,
    ) -> ExportSession:
        """Start (and by default wait for) an export; on any failure nothing is left behind."""
        session = self.prepare(target, details)
        try:
            session.start(ctx)
            if wait:
                session.wait_for_ready(self.settings.ready_timeout, ctx)
        except BaseException:
            session.close()
            raise
        return session
