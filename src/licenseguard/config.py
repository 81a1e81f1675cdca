"""Configuration loading for licenseguard.

Precedence (highest first):
    1. Explicit overrides passed to :func:`load_config` (e.g. CLI flags).
    2. Environment variables ``LICENSEGUARD_<KEY>`` (``LICENSEGUARD_NAMESPACE``, ...).
    3. The YAML config file (``LICENSEGUARD_CONFIG`` or ``~/.licenseguard/config.yaml``).
    4. Built-in defaults.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

_ENV_PREFIX = "LICENSEGUARD_"


@dataclass
class LicenseConfig:
    """Resolved settings for the secret store, identity source and watch loops."""

    namespace: str = "accuknox-agents"
    secret_name: str = "discovery-engine-license"
    label_selector: str = "app=discovery-engine"
    gate_interval: float = 5.0
    enforce_interval: float = 15.0
    kube_host: Optional[str] = None
    kube_token_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    kube_ca_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"
    timeout: float = 10.0
    retries: int = 3
    # Skips the kube-system lookup when set; for running outside a cluster.
    cluster_uuid: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_FIELD_TYPES: dict[str, type] = {
    "gate_interval": float,
    "enforce_interval": float,
    "timeout": float,
    "retries": int,
}


def get_config_path() -> Path:
    """Return the config file path, honouring ``LICENSEGUARD_CONFIG``."""
    env_path = os.environ.get(f"{_ENV_PREFIX}CONFIG")
    if env_path:
        return Path(env_path)
    return Path.home() / ".licenseguard" / "config.yaml"


def _load_config_file(config_path: Path) -> dict[str, Any]:
    """Read and parse a YAML config file, returning an empty dict on any failure."""
    if not config_path.is_file():
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (yaml.YAMLError, OSError) as exc:
        logger.warning("Could not read config file %s: %s", config_path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def _coerce(name: str, value: Any) -> Any:
    target = _FIELD_TYPES.get(name)
    if target is None or value is None:
        return value
    try:
        return target(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid value for {name}: {value!r}") from exc


def load_config(config_path: str | Path | None = None, **overrides: Any) -> LicenseConfig:
    """Resolve configuration from overrides, environment, file and defaults.

    Unknown keys in the file are ignored with a warning.  ``None`` overrides
    are skipped so CLI options that were not given do not mask lower layers.
    """
    names = [f.name for f in fields(LicenseConfig)]
    values: dict[str, Any] = {}

    path = Path(config_path) if config_path else get_config_path()
    for key, value in _load_config_file(path).items():
        if key not in names:
            logger.warning("Ignoring unknown config key %r in %s", key, path)
            continue
        if value is not None:
            values[key] = value

    for name in names:
        env_value = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
        if env_value:
            values[name] = env_value

    for name, value in overrides.items():
        if name not in names:
            raise TypeError(f"unknown config option: {name}")
        if value is not None:
            values[name] = value

    return LicenseConfig(**{name: _coerce(name, value) for name, value in values.items()})


def validate_config(config: LicenseConfig) -> list[str]:
    """Return a list of problems with *config*; empty when valid."""
    problems: list[str] = []
    for name in ("namespace", "secret_name", "label_selector"):
        if not str(getattr(config, name) or "").strip():
            problems.append(f"{name} must be non-empty")
    if "=" not in config.label_selector:
        problems.append("label_selector must look like key=value")
    for name in ("gate_interval", "enforce_interval", "timeout"):
        if getattr(config, name) <= 0:
            problems.append(f"{name} must be positive")
    if config.retries < 1:
        problems.append("retries must be at least 1")
    return problems
