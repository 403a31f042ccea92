from __future__ import annotations
import argparse
import glob
import hashlib
import hmac
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from rich.progress import Progress, BarColumn, TextColumn, TimeElapsedColumn, TimeRemainingColumn

from ..core.utils import U

ENV_PREFIX = "SNAP2NBD_"
SECRET_ENV = ENV_PREFIX + "CONFIG_SECRET"
CONFIG_SUFFIXES = (".yaml", ".yml", ".json")

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


class Config:
    @staticmethod
    def load_one(logger: logging.Logger, path: str) -> Dict[str, Any]:
        p = Path(path).expanduser().resolve()
        if not p.exists():
            U.die(logger, f"Config not found: {p}", 1)
        Config.verify_signature(logger, p)
        try:
            if p.suffix.lower() == ".json":
                data = json.loads(p.read_text(encoding="utf-8"))
            else:
                data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            U.die(logger, f"Invalid YAML in config {p}: {e}", 1)
        except (OSError, ValueError) as e:
            U.die(logger, f"Failed to load config {p}: {e}", 1)
        if not isinstance(data, dict):
            U.die(logger, f"Config must be a mapping/dict: {p}", 1)
        out = Config.normalize_keys(logger, data)
        logger.debug(f"Loaded config {p}:\n{U.json_dump(Config.redacted(out))}")
        return out

    @staticmethod
    def normalize_keys(logger: logging.Logger, data: Mapping[str, Any]) -> Dict[str, Any]:
        """dash keys -> underscore keys (one level; nested sections keep their own keys)."""
        out: Dict[str, Any] = {}
        for k, v in data.items():
            nk = str(k).replace("-", "_")
            out[nk] = v
            if nk != k:
                logger.debug(f"Normalized config key: {k} -> {nk}")
        return out

    @staticmethod
    def redacted(conf: Mapping[str, Any]) -> Dict[str, Any]:
        return {k: ("***" if "password" in k and v else v) for k, v in conf.items()}

    @staticmethod
    def verify_signature(logger: logging.Logger, config_path: Path) -> bool:
        """Verify config file HMAC signature (<file>.sig) when a secret is configured."""
        secret = os.environ.get(SECRET_ENV, "")
        if not secret:
            logger.debug(f"No config verification secret set ({SECRET_ENV})")
            return True
        sig_path = config_path.with_suffix(config_path.suffix + ".sig")
        if not sig_path.exists():
            logger.warning(f"No signature file found for config: {config_path}")
            return True
        try:
            config_content = config_path.read_bytes()
            actual_sig = sig_path.read_text().strip()
        except OSError as e:
            logger.warning(f"Config signature verification error: {e}")
            return False
        expected_sig = hmac.new(
            secret.encode(),
            config_content,
            hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(expected_sig, actual_sig):
            U.die(logger, f"Config signature verification failed for {config_path}", 1)
        logger.debug(f"Config signature verified: {config_path}")
        return True

    @staticmethod
    def merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep-ish merge:
        - dict + dict => recurse
        - list => override replaces (not concatenated)
        - scalar => override replaces
        """
        out = dict(base)
        for k, v in override.items():
            if k in out and isinstance(out[k], dict) and isinstance(v, dict):
                out[k] = Config.merge_dicts(out[k], v)
            else:
                out[k] = v
        return out

    @staticmethod
    def load_many(logger: logging.Logger, paths: List[str]) -> Dict[str, Any]:
        conf: Dict[str, Any] = {}
        with Progress(TextColumn("{task.description}"), BarColumn(), TextColumn("{task.percentage:>3.0f}%"), TimeElapsedColumn(), TimeRemainingColumn(), transient=True) as progress:
            task = progress.add_task("Loading configs", total=len(paths))
            for p in paths:
                conf = Config.merge_dicts(conf, Config.load_one(logger, p))
                progress.update(task, advance=1)
        return conf

    @staticmethod
    def env_overrides(
        logger: logging.Logger,
        environ: Optional[Mapping[str, str]] = None,
        prefix: str = ENV_PREFIX,
    ) -> Dict[str, Any]:
        """
        SNAP2NBD_RETRY_ATTEMPTS=5 -> {"retry_attempts": "5"}

        Values stay strings. argparse runs string defaults through the
        action's type= converter; flag actions are parsed in apply_as_defaults.
        """
        env = os.environ if environ is None else environ
        out: Dict[str, Any] = {}
        for k, v in env.items():
            if not k.startswith(prefix) or k == SECRET_ENV:
                continue
            key = k[len(prefix):].lower()
            if not key:
                continue
            out[key] = v
            logger.debug(f"[Config:env] {k} -> {key}")
        return out

    @staticmethod
    def parse_bool(value: Any) -> bool:
        """True/False, or one of 1/0, true/false, yes/no, on/off (any case)."""
        if isinstance(value, bool):
            return value
        low = str(value).strip().lower()
        if low in _TRUE:
            return True
        if low in _FALSE:
            return False
        raise ValueError(f"not a boolean: {value!r}")

    @staticmethod
    def apply_as_defaults(logger: logging.Logger, parser: argparse.ArgumentParser, conf: Dict[str, Any]) -> None:
        if not conf:
            return
        def apply_actions(actions: List[argparse.Action], scope: str) -> None:
            for act in actions:
                dest = getattr(act, "dest", None)
                if not dest or dest not in conf:
                    continue
                val = conf[dest]
                if isinstance(act, (argparse._StoreTrueAction, argparse._StoreFalseAction)) and val is not None:
                    try:
                        val = Config.parse_bool(val)
                    except ValueError as e:
                        U.die(logger, f"Invalid value for {dest}: {e}", 2)
                shown = "***" if "password" in dest and val else repr(val)
                logger.debug(f"[Config:{scope}] default {dest} -> {shown}")
                act.default = val
                if getattr(act, "required", False) and val is not None:
                    act.required = False
        apply_actions(parser._actions, "global")
        sp_action = next((a for a in parser._actions if isinstance(a, argparse._SubParsersAction)), None)
        if sp_action:
            for name, sp in sp_action.choices.items():
                apply_actions(sp._actions, f"sub:{name}")

    @staticmethod
    def expand_configs(logger: logging.Logger, configs: List[str]) -> List[str]:
        expanded: List[str] = []
        for c in configs:
            p = Path(c).expanduser().resolve()
            if p.is_dir():
                for f in sorted(p.rglob("*")):
                    if f.is_file() and f.suffix.lower() in CONFIG_SUFFIXES:
                        expanded.append(str(f))
            elif '*' in c or '?' in c:
                expanded.extend(sorted(glob.glob(c)))
            else:
                expanded.append(c)
        logger.debug(f"Expanded configs: {expanded}")
        return expanded
