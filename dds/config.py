"""Controller settings and policy ConfigMap parsing."""

from __future__ import annotations

import os
import re
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import yaml

from dds.errors import ConfigurationError
from dds.state import DeviceCatalogEntry, PolicyConfig

logger = logging.getLogger(__name__)

DEVICE_INFO_KEY = "device-info"
LABEL_PREFIX_KEY = "label-prefix"
FABRIC_ID_RANGE_KEY = "fabric-id-range"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) and single-unit strings such as
    "500ms", "30s", "10m" or "1h".
    """
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigurationError(f"invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ControllerSettings:
    """Runtime knobs for the reconcile loop."""
    scan_interval_s: float = 60.0
    device_no_removal_s: float = 600.0
    device_no_allocation_s: float = 600.0
    config_namespace: str = "composable-dra"
    config_name: str = "composable-dra-dds"
    status_host: str = "0.0.0.0"
    status_port: int = 8081
    error_backoff_base_s: float = 5.0
    error_backoff_max_s: float = 300.0
    watch_enabled: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ControllerSettings":
        """
        Build settings from DDS_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            ControllerSettings with defaults for every unset variable

        Raises:
            ConfigurationError: If a duration or port does not parse
        """
        env = os.environ if environ is None else environ
        settings = cls()

        durations = {
            "DDS_SCAN_INTERVAL": "scan_interval_s",
            "DDS_DEVICE_NO_REMOVAL": "device_no_removal_s",
            "DDS_DEVICE_NO_ALLOCATION": "device_no_allocation_s",
            "DDS_ERROR_BACKOFF_BASE": "error_backoff_base_s",
            "DDS_ERROR_BACKOFF_MAX": "error_backoff_max_s",
        }
        for var, attr in durations.items():
            if env.get(var):
                setattr(settings, attr, parse_duration(env[var]))

        settings.config_namespace = env.get("DDS_CONFIG_NAMESPACE", settings.config_namespace)
        settings.config_name = env.get("DDS_CONFIG_NAME", settings.config_name)
        settings.status_host = env.get("DDS_STATUS_HOST", settings.status_host)
        if env.get("DDS_STATUS_PORT"):
            try:
                settings.status_port = int(env["DDS_STATUS_PORT"])
            except ValueError as e:
                raise ConfigurationError(f"invalid DDS_STATUS_PORT: {e}")
        if env.get("DDS_WATCH_ENABLED"):
            settings.watch_enabled = _env_bool(env["DDS_WATCH_ENABLED"])
        settings.log_level = env.get("DDS_LOG_LEVEL", settings.log_level).upper()
        return settings


def _load_yaml(data: Mapping[str, str], key: str) -> Any:
    try:
        return yaml.safe_load(data.get(key) or "")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse {key}: {e}")


def _parse_int_list(value: Any, key: str) -> List[int]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, int) and not isinstance(v, bool) for v in value):
        raise ConfigurationError(f"failed to parse {key}: expected a list of integers, got {value!r}")
    return list(value)


def _parse_catalog_entry(raw: Any) -> DeviceCatalogEntry:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"failed to parse {DEVICE_INFO_KEY}: entry is not a mapping: {raw!r}")

    index = raw.get("index")
    if not isinstance(index, int) or isinstance(index, bool):
        raise ConfigurationError(f"failed to parse {DEVICE_INFO_KEY}: invalid index {index!r}")

    attributes = raw.get("dra-attributes") or {}
    if not isinstance(attributes, dict):
        raise ConfigurationError(f"failed to parse {DEVICE_INFO_KEY}: dra-attributes must be a mapping")

    return DeviceCatalogEntry(
        index=index,
        model_name=str(raw.get("cdi-model-name") or ""),
        k8s_device_name=str(raw.get("k8s-device-name") or ""),
        driver_name=str(raw.get("driver-name") or ""),
        label_key_model=str(raw.get("label-key-model") or ""),
        attributes={str(k): str(v) for k, v in attributes.items()},
        cannot_coexist_with=frozenset(
            _parse_int_list(raw.get("cannot-coexist-with"), f"{DEVICE_INFO_KEY} cannot-coexist-with")
        ),
    )


def parse_policy_config(data: Optional[Dict[str, str]]) -> PolicyConfig:
    """
    Parse the policy ConfigMap data into a PolicyConfig.

    Args:
        data: ConfigMap `data` mapping

    Returns:
        PolicyConfig with the device catalog in document order

    Raises:
        ConfigurationError: If any field is malformed
    """
    data = data or {}

    devices_raw = _load_yaml(data, DEVICE_INFO_KEY)
    if devices_raw is None:
        devices_raw = []
    if not isinstance(devices_raw, list):
        raise ConfigurationError(f"failed to parse {DEVICE_INFO_KEY}: expected a list, got {devices_raw!r}")
    devices = [_parse_catalog_entry(raw) for raw in devices_raw]

    seen = set()
    for entry in devices:
        if entry.index in seen:
            raise ConfigurationError(f"failed to parse {DEVICE_INFO_KEY}: duplicate index {entry.index}")
        seen.add(entry.index)

    fabric_ids = _parse_int_list(_load_yaml(data, FABRIC_ID_RANGE_KEY), FABRIC_ID_RANGE_KEY)

    label_prefix = str(data.get(LABEL_PREFIX_KEY) or "").strip().rstrip("/")
    if not label_prefix:
        raise ConfigurationError(f"failed to parse {LABEL_PREFIX_KEY}: empty")

    config = PolicyConfig(
        label_prefix=label_prefix,
        devices=tuple(devices),
        fabric_id_range=tuple(fabric_ids),
    )
    logger.debug(f"Loaded policy config: {len(devices)} catalog entries, prefix={config.label_prefix}")
    return config
