from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass(frozen=True)
class VsphereCreds:
    host: str
    user: str
    password: str = field(repr=False)

    def complete(self) -> bool:
        return bool(self.host and self.user and self.password)


def _strip(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, str):
        return v.strip()
    return str(v).strip()


def _get_env(env_key: str) -> str:
    env_key = _strip(env_key)
    if not env_key:
        return ""
    return _strip(os.environ.get(env_key, ""))


def resolve_vsphere_creds(cfg: Mapping[str, Any]) -> VsphereCreds:
    """
    Resolve vSphere creds from the merged CLI/env/file mapping.

    Priority:
      host: vcenter_url > vcenter > vc_host
      user: vc_user > username
      pass: vc_password > password > $vc_password_env
    """
    host = _strip(cfg.get("vcenter_url") or cfg.get("vcenter") or cfg.get("vc_host"))
    user = _strip(cfg.get("vc_user") or cfg.get("username"))

    pw = _strip(cfg.get("vc_password"))
    if not pw:
        pw = _strip(cfg.get("password"))
    if not pw:
        pw = _get_env(cfg.get("vc_password_env", ""))

    return VsphereCreds(host=host, user=user, password=pw)
