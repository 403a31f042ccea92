# snap2nbd/config/settings.py
"""
Typed settings built from the merged CLI / env / file mapping.

Every knob has a default here so library users can construct the dataclasses
directly without going through argparse. Validation failures raise
``Fatal(2, ...)``, the same exit code argparse uses for usage errors.
"""
from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Tuple, TypeVar
from urllib.parse import urlsplit

from .config_loader import Config
from ..core.cred import resolve_vsphere_creds
from ..core.exceptions import Fatal

T = TypeVar("T")

DEFAULT_PORT = 443
DEFAULT_SDK_PATH = "/sdk"
MAX_RETRY_ATTEMPTS = 10
THUMBPRINT_DIGESTS = ("sha1", "sha256")


def parse_endpoint(url: str) -> Tuple[str, int, str]:
    """
    "vc.example.com"                 -> ("vc.example.com", 443, "/sdk")
    "https://vc.example.com:8443/sdk" -> ("vc.example.com", 8443, "/sdk")
    """
    raw = (url or "").strip()
    if not raw:
        raise Fatal(2, "vCenter URL is empty")
    if "://" not in raw:
        raw = "https://" + raw
    try:
        parts = urlsplit(raw)
        port = parts.port or DEFAULT_PORT
    except ValueError as e:
        raise Fatal(code=2, msg=f"Invalid vCenter URL {url!r}: {e}", cause=e)
    if parts.scheme not in ("https", "http"):
        raise Fatal(2, f"Invalid vCenter URL scheme {parts.scheme!r} (expected https)")
    host = parts.hostname or ""
    if not host:
        raise Fatal(2, f"Invalid vCenter URL {url!r}: no host")
    path = parts.path if parts.path not in ("", "/") else DEFAULT_SDK_PATH
    return host, port, path


def _get(cfg: Mapping[str, Any], key: str, default: T, cast: Callable[[Any], T]) -> T:
    v = cfg.get(key)
    if v is None or v == "":
        return default
    try:
        return cast(v)
    except (TypeError, ValueError) as e:
        raise Fatal(code=2, msg=f"Invalid value for {key}: {v!r}", cause=e)


@dataclass(frozen=True)
class VMwareSettings:
    vcenter_url: str
    username: str
    password: str = field(repr=False)
    insecure: bool = False
    connection_timeout: float = 30.0
    request_timeout: float = 60.0
    retry_attempts: int = 3
    retry_delay: float = 5.0
    datacenter: Optional[str] = None

    def __post_init__(self) -> None:
        self.validate()

    @property
    def endpoint(self) -> Tuple[str, int, str]:
        return parse_endpoint(self.vcenter_url)

    @property
    def host(self) -> str:
        return self.endpoint[0]

    @property
    def port(self) -> int:
        return self.endpoint[1]

    def validate(self) -> None:
        parse_endpoint(self.vcenter_url)
        if not self.username:
            raise Fatal(2, "vCenter username is required (--vc-user / vc_user)")
        if not self.password:
            raise Fatal(2, "vCenter password is required (--vc-password / vc_password / --vc-password-env)")
        if not 0 <= self.retry_attempts <= MAX_RETRY_ATTEMPTS:
            raise Fatal(2, f"retry_attempts must be within 0..{MAX_RETRY_ATTEMPTS}, got {self.retry_attempts}")
        for name in ("connection_timeout", "request_timeout"):
            if getattr(self, name) <= 0:
                raise Fatal(2, f"{name} must be > 0")
        if self.retry_delay < 0:
            raise Fatal(2, "retry_delay must be >= 0")

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "VMwareSettings":
        creds = resolve_vsphere_creds(cfg)
        return cls(
            vcenter_url=creds.host,
            username=creds.user,
            password=creds.password,
            insecure=_get(cfg, "vc_insecure", False, Config.parse_bool) or _get(cfg, "insecure", False, Config.parse_bool),
            connection_timeout=_get(cfg, "connection_timeout", 30.0, float),
            request_timeout=_get(cfg, "request_timeout", 60.0, float),
            retry_attempts=_get(cfg, "retry_attempts", 3, int),
            retry_delay=_get(cfg, "retry_delay", 5.0, float),
            datacenter=(str(cfg.get("datacenter")).strip() or None) if cfg.get("datacenter") else None,
        )


@dataclass(frozen=True)
class ExportSettings:
    nbdkit_path: str = "nbdkit"
    vddk_libdir: Optional[str] = None
    socket_dir: str = field(default_factory=tempfile.gettempdir)
    start_grace: float = 2.0
    ready_timeout: float = 30.0
    poll_interval: float = 0.5
    ready_grace: float = 0.5
    close_grace: float = 5.0
    thumbprint: Optional[str] = None
    thumbprint_digest: str = "sha1"
    transports: Optional[str] = None
    tail_lines: int = 200

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        for name in ("start_grace", "ready_grace", "close_grace"):
            if getattr(self, name) < 0:
                raise Fatal(2, f"{name} must be >= 0")
        for name in ("ready_timeout", "poll_interval"):
            if getattr(self, name) <= 0:
                raise Fatal(2, f"{name} must be > 0")
        if self.thumbprint_digest not in THUMBPRINT_DIGESTS:
            raise Fatal(2, f"thumbprint_digest must be one of {THUMBPRINT_DIGESTS}, got {self.thumbprint_digest!r}")
        if self.tail_lines < 1:
            raise Fatal(2, "tail_lines must be >= 1")

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "ExportSettings":
        d = cls.__dataclass_fields__
        return cls(
            nbdkit_path=_get(cfg, "nbdkit_path", "nbdkit", str),
            vddk_libdir=_get(cfg, "vddk_libdir", None, str),
            socket_dir=_get(cfg, "socket_dir", tempfile.gettempdir(), str),
            start_grace=_get(cfg, "start_grace", d["start_grace"].default, float),
            ready_timeout=_get(cfg, "ready_timeout", d["ready_timeout"].default, float),
            poll_interval=_get(cfg, "poll_interval", d["poll_interval"].default, float),
            ready_grace=_get(cfg, "ready_grace", d["ready_grace"].default, float),
            close_grace=_get(cfg, "close_grace", d["close_grace"].default, float),
            thumbprint=_get(cfg, "thumbprint", None, str),
            thumbprint_digest=_get(cfg, "thumbprint_digest", "sha1", lambda v: str(v).lower()),
            transports=_get(cfg, "transports", None, str),
            tail_lines=_get(cfg, "tail_lines", 200, int),
        )
