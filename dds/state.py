from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from dds.errors import ConfigurationError

logger = logging.getLogger(__name__)

_FRACTION_RE = re.compile(r"\.(\d+)")

DEVICE_RESCHEDULE_CONDITION = "FabricDeviceReschedule"
DEVICE_FAILED_CONDITION = "FabricDeviceFailed"
PROVISIONED_ONLINE = "Online"
HEALTH_ATTRIBUTE = "health"
HEALTH_RED = "red"
LAST_USED_TIME_SUFFIX = "last-used-time"


def parse_timestamp(value: Any) -> Optional[datetime]:
        """
        Parse an RFC3339 string (or pass through a datetime) into an aware UTC datetime.

        Fractional seconds of any precision are accepted.

        Raises:
                ConfigurationError: If the value is not an RFC3339 timestamp
        """
        if value is None or value == "":
                return None
        if isinstance(value, datetime):
                ts = value
        else:
                text = str(value).strip().replace("Z", "+00:00").replace("z", "+00:00")
                # fromisoformat before 3.11 only takes 3 or 6 fraction digits
                text = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text)
                try:
                        ts = datetime.fromisoformat(text)
                except ValueError:
                        raise ConfigurationError(f"invalid timestamp {value!r}")
        if ts.tzinfo is None:
                ts = ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc)


def format_timestamp(ts: datetime) -> str:
        """RFC3339 with second precision, as the API server stores it."""
        return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_now() -> datetime:
        return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeviceCatalogEntry:
        index: int
        model_name: str
        k8s_device_name: str
        driver_name: str = ""
        label_key_model: str = ""
        attributes: Mapping[str, str] = field(default_factory=dict)
        cannot_coexist_with: FrozenSet[int] = frozenset()

        def matches(self, driver: str, attributes: Mapping[str, str]) -> bool:
                """True when a slice device of `driver` with `attributes` is this model."""
                if not self.driver_name and not self.attributes:
                        return False
                if self.driver_name and self.driver_name != driver:
                        return False
                return all(attributes.get(k) == v for k, v in self.attributes.items())


@dataclass(frozen=True)
class PolicyConfig:
        label_prefix: str
        devices: Tuple[DeviceCatalogEntry, ...] = ()
        fabric_id_range: Tuple[int, ...] = ()

        def entry_for_device_name(self, device_name: str) -> Optional[DeviceCatalogEntry]:
                for entry in self.devices:
                        if entry.k8s_device_name == device_name:
                                return entry
                return None

        def label_for(self, entry: DeviceCatalogEntry) -> str:
                return f"{self.label_prefix}/{entry.k8s_device_name}"

        @property
        def last_used_annotation(self) -> str:
                return f"{self.label_prefix}/{LAST_USED_TIME_SUFFIX}"


@dataclass(frozen=True)
class ModelConstraints:
        model: str
        device_name: str
        min_device: int = 0
        max_device: int = 0


@dataclass(frozen=True)
class NodeInfo:
        name: str
        models: Tuple[ModelConstraints, ...] = ()
        labels: Mapping[str, str] = field(default_factory=dict)

        def constraints_for(self, model: str) -> Optional[ModelConstraints]:
                for constraints in self.models:
                        if constraints.model == model:
                                return constraints
                return None

        def min_device_for(self, model: str) -> int:
                constraints = self.constraints_for(model)
                return constraints.min_device if constraints else 0

        def max_device_for(self, model: str) -> int:
                constraints = self.constraints_for(model)
                return constraints.max_device if constraints else 0


class DeviceState(Enum):
        """Claim device state derived from its reported conditions."""
        HEALTHY = "Healthy"
        PREPARING = "Preparing"
        RESCHEDULE = "Reschedule"
        FAILED = "Failed"


@dataclass(frozen=True)
class ClaimDevice:
        name: str
        driver: str = ""
        pool: str = ""
        model: str = ""
        state: DeviceState = DeviceState.HEALTHY
        binding_conditions: Tuple[str, ...] = ()
        binding_failure_conditions: Tuple[str, ...] = ()
        bound: bool = True

        @property
        def key(self) -> Tuple[str, str, str]:
                return (self.driver, self.pool, self.name)


@dataclass(frozen=True)
class ClaimConsumer:
        resource: str
        name: str
        uid: str = ""


@dataclass(frozen=True)
class ClaimInfo:
        name: str
        namespace: str
        node_name: str = ""
        slice_name: str = ""
        created_at: Optional[datetime] = None
        devices: Tuple[ClaimDevice, ...] = ()
        consumers: Tuple[ClaimConsumer, ...] = ()

        def has_state(self, state: DeviceState) -> bool:
                return any(device.state == state for device in self.devices)

        def uses_device(self, driver: str, pool: str, name: str) -> bool:
                return any(device.key == (driver, pool, name) for device in self.devices)


@dataclass(frozen=True)
class SliceDevice:
        name: str
        uuid: str = ""
        attributes: Mapping[str, str] = field(default_factory=dict)

        @property
        def is_red(self) -> bool:
                return self.attributes.get(HEALTH_ATTRIBUTE, "").lower() == HEALTH_RED


@dataclass(frozen=True)
class SliceInfo:
        name: str
        node_name: str = ""
        created_at: Optional[datetime] = None
        driver: str = ""
        pool: str = ""
        devices: Tuple[SliceDevice, ...] = ()

        def device(self, name: str) -> Optional[SliceDevice]:
                for device in self.devices:
                        if device.name == name:
                                return device
                return None


@dataclass(frozen=True)
class AllocationRequest:
        """A ComposabilityRequest: how many devices of a model a node asks for."""
        name: str
        model: str
        target_node: str
        size: int
        type: str = ""
        resource_version: str = ""

        @classmethod
        def from_object(cls, obj: Dict[str, Any]) -> "AllocationRequest":
                metadata = obj.get("metadata") or {}
                resource = (obj.get("spec") or {}).get("resource") or {}
                return cls(
                        name=metadata.get("name", ""),
                        model=resource.get("model", ""),
                        target_node=resource.get("targetNode", ""),
                        size=int(resource.get("size") or 0),
                        type=resource.get("type", ""),
                        resource_version=str(metadata.get("resourceVersion", "")),
                )


@dataclass(frozen=True)
class ProvisionedDevice:
        """A ComposableResource: one device instance attached through the fabric."""
        name: str
        model: str = ""
        target_node: str = ""
        state: str = ""
        device_id: str = ""
        last_used_time: Optional[datetime] = None

        @property
        def online(self) -> bool:
                return self.state == PROVISIONED_ONLINE

        @classmethod
        def from_object(cls, obj: Dict[str, Any], last_used_annotation: str) -> "ProvisionedDevice":
                metadata = obj.get("metadata") or {}
                spec = obj.get("spec") or {}
                status = obj.get("status") or {}
                annotations = metadata.get("annotations") or {}
                name = metadata.get("name", "")
                try:
                        last_used_time = parse_timestamp(annotations.get(last_used_annotation))
                except ConfigurationError as e:
                        # An unreadable stamp counts as never used; the UsageTracker rewrites it
                        logger.warning(f"Ignoring {last_used_annotation} on {name}: {e}")
                        last_used_time = None
                return cls(
                        name=name,
                        model=spec.get("model", ""),
                        target_node=spec.get("targetNode", ""),
                        state=status.get("state", ""),
                        device_id=status.get("deviceID", ""),
                        last_used_time=last_used_time,
                )


@dataclass(frozen=True)
class ClusterSnapshot:
        """Everything one reconcile cycle reads up front."""
        claims: Tuple[ClaimInfo, ...]
        slices: Tuple[SliceInfo, ...]
        nodes: Tuple[NodeInfo, ...]
        config: PolicyConfig

        def claims_on(self, node_name: str) -> Tuple[ClaimInfo, ...]:
                return tuple(claim for claim in self.claims if claim.node_name == node_name)
