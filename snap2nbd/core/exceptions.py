# snap2nbd/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


@dataclass(eq=False)
class Snap2NbdError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - readable __str__ (what users see)
      - safe code handling (never crashes on int())
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _safe_int(self.code, default=1)
        self.msg = _one_line(self.msg)
        super().__init__(self.msg)

    def with_context(self, **ctx: Any) -> "Snap2NbdError":
        if self.context is None:
            self.context = {}
        self.context.update(ctx)
        return self

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        """
        Human-friendly message for CLI output/logs.
        """
        base = self.msg or self.__class__.__name__

        parts = [base]

        if include_context and self.context:
            kv = ", ".join(f"{k}={self.context[k]!r}" for k in sorted(self.context.keys()))
            parts.append(f"[{kv}]")

        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")

        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message(include_context=False, include_cause=False)

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.msg,
            "context": self.context or {},
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(Snap2NbdError):
    """
    User-facing fatal error (exit code should be honored by top-level main()).
    """
    pass


@dataclass(eq=False)
class VMwareError(Snap2NbdError):
    """
    vSphere/vCenter operation failed.
    Use for pyvmomi / SDK / ESXi errors that have no more specific class.
    """
    code: int = 50


@dataclass(eq=False)
class VSphereConnectionError(VMwareError):
    """Endpoint unreachable, TLS failure, or the session could not be (re)established."""
    code: int = 51


@dataclass(eq=False)
class AuthenticationError(VMwareError):
    """Credentials rejected, or the post-login session check failed."""
    code: int = 52


@dataclass(eq=False)
class NotFoundError(VMwareError):
    """Named datacenter, VM, snapshot or disk does not exist."""
    code: int = 53


@dataclass(eq=False)
class NoSnapshotsError(NotFoundError):
    """The VM exists but carries no snapshot tree at all."""
    pass


@dataclass(eq=False)
class ResolutionIncompleteError(VMwareError):
    """
    The target exists but a required attribute is missing:
    no base disk path, no runtime host, no compute-resource path.
    """
    code: int = 54


@dataclass(eq=False)
class TaskError(VMwareError):
    """A remote task finished in the error state; msg is the remote fault text."""
    code: int = 55


@dataclass(eq=False)
class ExportProcessError(Snap2NbdError):
    """
    nbdkit exited (or could not be spawned) before the export became ready.
    The captured stdout/stderr tail travels in context["output"].
    """
    code: int = 60


@dataclass(eq=False)
class OperationTimeout(Snap2NbdError):
    """A deadline expired while waiting."""
    code: int = 62


@dataclass(eq=False)
class ExportTimeoutError(OperationTimeout):
    """The export socket did not appear before the readiness deadline."""
    pass


@dataclass(eq=False)
class OperationCancelled(Snap2NbdError):
    """The caller cancelled the wait."""
    code: int = 130
    msg: str = "operation cancelled"


def wrap_fatal(code: int, msg: str, exc: Optional[BaseException] = None, **context: Any) -> Fatal:
    return Fatal(code=code, msg=msg, cause=exc, context=context or None)


def wrap_vmware(msg: str, exc: Optional[BaseException] = None, code: int = 50, **context: Any) -> VMwareError:
    return VMwareError(code=code, msg=msg, cause=exc, context=context or None)


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: just message
    verbose=1: message + compact context (if any)
    verbose>=2: message + context + cause
    """
    if isinstance(e, Snap2NbdError):
        return e.user_message(
            include_context=(verbose >= 1),
            include_cause=(verbose >= 2),
        )

    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
