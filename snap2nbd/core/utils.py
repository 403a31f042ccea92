from __future__ import annotations
import json
import logging
import os
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .exceptions import Fatal

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


class U:
    @staticmethod
    def die(logger: logging.Logger, msg: str, code: int = 1) -> None:
        logger.error(msg)
        raise Fatal(code, msg)

    @staticmethod
    def json_dump(obj: Any) -> str:
        try:
            return json.dumps(obj, indent=2, sort_keys=True, default=str)
        except (TypeError, ValueError):
            return repr(obj)

    @staticmethod
    def banner(logger: logging.Logger, title: str) -> None:
        line = "─" * max(10, len(title) + 2)
        logger.info(line)
        logger.info(f" {title}")
        logger.info(line)

    @staticmethod
    def pretty_cmd(cmd: Sequence[str]) -> str:
        return " ".join(shlex.quote(x) for x in cmd)

    @staticmethod
    def run_cmd(
        logger: logging.Logger,
        cmd: List[str],
        *,
        check: bool = True,
        capture: bool = False,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        pretty = U.pretty_cmd(cmd)
        logger.debug(f"Running: {pretty}")
        try:
            return subprocess.run(
                cmd,
                check=check,
                capture_output=capture,
                text=True,
                env=env,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            logger.error(f"Command failed: {pretty}\nstdout: {e.stdout}\nstderr: {e.stderr}")
            raise
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Command error: {pretty} {e}")
            raise

    @staticmethod
    def safe_unlink(p: Path, logger: Optional[logging.Logger] = None) -> bool:
        """Remove a file if present. Failures are logged, never raised."""
        try:
            p.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            if logger is not None:
                logger.warning(f"Could not remove {p}: {e}")
            return False

    @staticmethod
    def write_secret_file(base_dir: Path, prefix: str, secret: str) -> Path:
        """Write ``secret`` to a fresh 0600 file under ``base_dir`` and return its path."""
        base_dir.mkdir(parents=True, exist_ok=True)
        path = base_dir / f".{prefix}-{os.getpid()}-{os.urandom(4).hex()}"
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(secret)
        return path

    @staticmethod
    def to_text(x: Any) -> str:
        if x is None:
            return ""
        if isinstance(x, bytes):
            return x.decode("utf-8", "replace")
        return str(x)

    @staticmethod
    def strip_ansi(s: str) -> str:
        return _ANSI_RE.sub("", s or "")
