"""Bridge configuration stored in <home>/config.yaml.

Layout mirrors `BridgeConfig`:

    feishu:
      app_id: cli_xxx
      app_secret_env: FEISHU_APP_SECRET   # or app_secret: ...
    assistant:
      work_dir: ~/projects/demo
      port: 4096
    web:
      port: 3000

Environment overrides: the variable named by `feishu.app_secret_env`,
`OCLB_WORK_DIR` and `OCLB_WEB_PORT`.
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml  # type: ignore
from pydantic import ValidationError

from ..contracts.v1 import BridgeConfig, missing_fields
from ..paths import config_path
from ..util.fs import atomic_write_text
from .errors import ConfigInvalid

logger = logging.getLogger("oclb.settings")


def _is_env_var_name(value: str) -> bool:
    return bool(re.fullmatch(r"[A-Z_][A-Z0-9_]*", (value or "").strip()))


def load_settings_doc(path: Optional[Path] = None) -> Dict[str, Any]:
    """Raw YAML document; {} when missing or unreadable."""
    p = path or config_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except Exception as e:
        logger.warning("unreadable config %s: %s", p, e)
        return {}
    return doc if isinstance(doc, dict) else {}


def parse_config(doc: Union[BridgeConfig, Dict[str, Any], None]) -> BridgeConfig:
    if isinstance(doc, BridgeConfig):
        return doc
    try:
        return BridgeConfig.model_validate(doc or {})
    except ValidationError as e:
        problems = [f"{'.'.join(str(x) for x in err.get('loc', ()))}: {err.get('msg')}" for err in e.errors()]
        raise ConfigInvalid("invalid configuration: " + "; ".join(problems), details={"errors": problems}) from e


def apply_env_overrides(cfg: BridgeConfig, env: Optional[Dict[str, str]] = None) -> BridgeConfig:
    environ = os.environ if env is None else env
    out = cfg.model_copy(deep=True)

    secret_env_raw = str(out.feishu.app_secret_env or "").strip()
    if _is_env_var_name(secret_env_raw):
        secret = str(environ.get(secret_env_raw, "") or "").strip()
        if secret:
            out.feishu.app_secret = secret
    elif secret_env_raw and not out.feishu.app_secret:
        # Common misconfig: raw secret pasted into the *_env field.
        out.feishu.app_secret = secret_env_raw

    work_dir = str(environ.get("OCLB_WORK_DIR", "") or "").strip()
    if work_dir:
        out.assistant.work_dir = work_dir

    web_port = str(environ.get("OCLB_WEB_PORT", "") or "").strip()
    if web_port:
        try:
            out.web.port = int(web_port)
        except ValueError:
            logger.warning("ignoring non-numeric OCLB_WEB_PORT=%r", web_port)
    return out


def load_config(path: Optional[Path] = None) -> Optional[BridgeConfig]:
    """Load and validate the config file; None when it does not exist."""
    p = path or config_path()
    if not p.exists():
        return None
    cfg = parse_config(load_settings_doc(p))
    return apply_env_overrides(cfg)


def save_config(cfg: Union[BridgeConfig, Dict[str, Any]], path: Optional[Path] = None) -> Path:
    model = parse_config(cfg)
    p = path or config_path()
    doc = model.model_dump()
    # Keep the secret out of the file only while the environment actually supplies it.
    secret_env = str(model.feishu.app_secret_env or "").strip()
    if _is_env_var_name(secret_env) and str(os.environ.get(secret_env, "") or "").strip():
        doc["feishu"]["app_secret"] = ""
    atomic_write_text(p, yaml.safe_dump(doc, allow_unicode=True, sort_keys=False))
    return p


def validate_config(cfg: Union[BridgeConfig, Dict[str, Any], None]) -> List[str]:
    """Human-readable problems; [] when the config can start a bridge."""
    if cfg is None:
        return ["config is missing"]
    try:
        model = parse_config(cfg)
    except ConfigInvalid as e:
        return list(e.details.get("errors") or [e.message])
    errors = [f"{name} is required and must be a non-empty string" for name in missing_fields(model)]
    work_dir = model.assistant.work_dir.strip()
    if work_dir and not Path(work_dir).expanduser().is_dir():
        errors.append(f"assistant.work_dir does not exist: {work_dir}")
    if model.assistant.port == model.web.port and model.assistant.host == model.web.host:
        errors.append("assistant.port must differ from web.port")
    return errors
