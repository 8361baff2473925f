"""Cluster state collection: claims, slices, nodes and policy for one cycle."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from dds.cluster_client import ClusterClient
from dds.config import parse_policy_config
from dds.errors import ConfigurationError
from dds.state import (
	DEVICE_FAILED_CONDITION,
	DEVICE_RESCHEDULE_CONDITION,
	ClaimConsumer,
	ClaimDevice,
	ClaimInfo,
	ClusterSnapshot,
	DeviceState,
	ModelConstraints,
	NodeInfo,
	PolicyConfig,
	SliceDevice,
	SliceInfo,
	parse_timestamp,
)

logger = logging.getLogger(__name__)

SIZE_MIN_SUFFIX = "-size-min"
SIZE_MAX_SUFFIX = "-size-max"
NODE_NAME_FIELD = "metadata.name"


def classify_conditions(conditions: Optional[Sequence[Dict[str, Any]]]) -> DeviceState:
	"""
	Map a device's reported conditions to a DeviceState.

	The whole set is considered: a true reschedule condition wins over a
	true failed condition, any other condition means the device is still
	preparing, and no conditions at all means healthy.
	"""
	if not conditions:
		return DeviceState.HEALTHY
	true_types = {c.get("type") for c in conditions if c.get("status") == "True"}
	if DEVICE_RESCHEDULE_CONDITION in true_types:
		return DeviceState.RESCHEDULE
	if DEVICE_FAILED_CONDITION in true_types:
		return DeviceState.FAILED
	return DeviceState.PREPARING


def has_matching_binding_condition(
	conditions: Optional[Sequence[Dict[str, Any]]],
	binding_conditions: Optional[Iterable[str]],
	binding_failure_conditions: Optional[Iterable[str]],
) -> bool:
	"""True if any true condition is named by the binding or binding-failure lists."""
	wanted = set(binding_conditions or ()) | set(binding_failure_conditions or ())
	if not wanted:
		return False
	return any(c.get("status") == "True" and c.get("type") in wanted for c in conditions or ())


def node_name_from_selector(selector: Optional[Dict[str, Any]]) -> str:
	"""Extract the node pinned by an allocation's node selector, if any."""
	for term in (selector or {}).get("nodeSelectorTerms") or []:
		for requirement in term.get("matchFields") or []:
			if (
				requirement.get("key") == NODE_NAME_FIELD
				and requirement.get("operator") == "In"
				and requirement.get("values")
			):
				return requirement["values"][0]
	return ""


def _attribute_value(raw: Any) -> str:
	if not isinstance(raw, dict):
		return "" if raw is None else str(raw)
	for key in ("string", "version", "int", "bool"):
		if key in raw and raw[key] is not None:
			value = raw[key]
			if isinstance(value, bool):
				return "true" if value else "false"
			return str(value)
	return ""


def _render_attributes(raw_attributes: Optional[Dict[str, Any]]) -> Dict[str, str]:
	attributes: Dict[str, str] = {}
	for name, raw in (raw_attributes or {}).items():
		attributes[name] = _attribute_value(raw)
	# Qualified names ("gpu.nvidia.com/productName") are also reachable by their short form
	for name in list(attributes):
		if "/" in name:
			attributes.setdefault(name.rsplit("/", 1)[1], attributes[name])
	return attributes


def parse_resource_slices(items: Iterable[Dict[str, Any]]) -> List[SliceInfo]:
	slices: List[SliceInfo] = []
	for item in items:
		metadata = item.get("metadata") or {}
		spec = item.get("spec") or {}

		devices: List[SliceDevice] = []
		for device in spec.get("devices") or []:
			# v1beta1 nests attributes under "basic"; later versions do not
			body = device.get("basic") if "basic" in device else device
			if body is None:
				continue
			attributes = _render_attributes(body.get("attributes"))
			devices.append(SliceDevice(
				name=device.get("name", ""),
				uuid=attributes.get("uuid", ""),
				attributes=attributes,
			))

		slices.append(SliceInfo(
			name=metadata.get("name", ""),
			node_name=spec.get("nodeName") or "",
			created_at=parse_timestamp(metadata.get("creationTimestamp")),
			driver=spec.get("driver", ""),
			pool=(spec.get("pool") or {}).get("name", ""),
			devices=tuple(devices),
		))
	return slices


def _find_slice(slices: Sequence[SliceInfo], driver: str, pool: str, device_name: str) -> Tuple[Optional[SliceInfo], Optional[SliceDevice]]:
	for resource_slice in slices:
		if resource_slice.driver == driver and resource_slice.pool == pool:
			device = resource_slice.device(device_name)
			if device is not None:
				return resource_slice, device
	return None, None


def _resolve_model(config: PolicyConfig, driver: str, device: Optional[SliceDevice]) -> str:
	if device is None:
		return ""
	for entry in config.devices:
		if entry.matches(driver, device.attributes):
			return entry.model_name
	return ""


def parse_resource_claims(
	items: Iterable[Dict[str, Any]],
	slices: Sequence[SliceInfo],
	config: PolicyConfig,
) -> List[ClaimInfo]:
	"""
	Build ClaimInfo for every claim reserved by at least one consumer.

	Devices come from the allocation results, joined with the per-device
	status the driver reports. The claim's node is the node of the slice
	publishing its first resolvable device, or the allocation node selector.
	"""
	claims: List[ClaimInfo] = []
	for item in items:
		metadata = item.get("metadata") or {}
		status = item.get("status") or {}

		reserved_for = status.get("reservedFor") or []
		if not reserved_for:
			continue

		allocation = status.get("allocation") or {}
		results = (allocation.get("devices") or {}).get("results") or []
		device_statuses = {
			(d.get("driver", ""), d.get("pool", ""), d.get("device", "")): d
			for d in status.get("devices") or []
		}

		ordered: List[Tuple[Tuple[str, str, str], Dict[str, Any]]] = []
		for result in results:
			ordered.append(((result.get("driver", ""), result.get("pool", ""), result.get("device", "")), result))
		known = {key for key, _ in ordered}
		for key in device_statuses:
			if key not in known:
				ordered.append((key, {}))

		node_name = ""
		slice_name = ""
		devices: List[ClaimDevice] = []
		for (driver, pool, device_name), result in ordered:
			resource_slice, slice_device = _find_slice(slices, driver, pool, device_name)
			if not node_name and resource_slice is not None:
				node_name = resource_slice.node_name
				slice_name = resource_slice.name

			conditions = (device_statuses.get((driver, pool, device_name)) or {}).get("conditions") or []
			binding = tuple(result.get("bindingConditions") or ())
			binding_failure = tuple(result.get("bindingFailureConditions") or ())
			bound = not binding or has_matching_binding_condition(conditions, binding, binding_failure)

			devices.append(ClaimDevice(
				name=device_name,
				driver=driver,
				pool=pool,
				model=_resolve_model(config, driver, slice_device),
				state=classify_conditions(conditions),
				binding_conditions=binding,
				binding_failure_conditions=binding_failure,
				bound=bound,
			))

		if not node_name:
			node_name = node_name_from_selector(allocation.get("nodeSelector"))

		claims.append(ClaimInfo(
			name=metadata.get("name", ""),
			namespace=metadata.get("namespace", ""),
			node_name=node_name,
			slice_name=slice_name,
			created_at=parse_timestamp(metadata.get("creationTimestamp")),
			devices=tuple(devices),
			consumers=tuple(
				ClaimConsumer(resource=c.get("resource", ""), name=c.get("name", ""), uid=c.get("uid", ""))
				for c in reserved_for
			),
		))
	return claims


def _model_name(config: PolicyConfig, device_name: str) -> str:
	entry = config.entry_for_device_name(device_name)
	if entry is None:
		raise ConfigurationError(f"unknown device name: {device_name}")
	return entry.model_name


def _parse_size(value: str) -> int:
	try:
		return int(value.strip())
	except ValueError as e:
		raise ConfigurationError(f"invalid integer in {value}: {e}")


def parse_nodes(items: Iterable[Dict[str, Any]], config: PolicyConfig) -> List[NodeInfo]:
	"""
	Read per-model min/max bounds from `<prefix>/<device>-size-{min,max}` labels.

	Raises:
		ConfigurationError: On an unknown device name or a non-integer bound
	"""
	prefix = config.label_prefix + "/"
	nodes: List[NodeInfo] = []
	for item in items:
		metadata = item.get("metadata") or {}
		labels = dict(metadata.get("labels") or {})

		bounds: Dict[str, Dict[str, Any]] = {}
		for key in sorted(labels):
			if not key.startswith(prefix):
				continue
			suffix = key[len(prefix):]
			if suffix.endswith(SIZE_MAX_SUFFIX):
				field_name = "max_device"
				device_name = suffix[:-len(SIZE_MAX_SUFFIX)]
			elif suffix.endswith(SIZE_MIN_SUFFIX):
				field_name = "min_device"
				device_name = suffix[:-len(SIZE_MIN_SUFFIX)]
			else:
				continue

			size = _parse_size(labels[key])
			entry = bounds.setdefault(device_name, {"model": _model_name(config, device_name)})
			entry[field_name] = size

		models = tuple(
			ModelConstraints(
				model=values["model"],
				device_name=device_name,
				min_device=values.get("min_device", 0),
				max_device=values.get("max_device", 0),
			)
			for device_name, values in sorted(bounds.items())
		)
		nodes.append(NodeInfo(name=metadata.get("name", ""), models=models, labels=labels))
	return nodes


class StateCollector:
	"""Reads the cluster view one reconcile cycle works from."""

	def __init__(
		self,
		cluster: ClusterClient,
		config_namespace: str = "composable-dra",
		config_name: str = "composable-dra-dds",
	) -> None:
		"""
		Initialize the collector.

		Args:
			cluster: Cluster access used for every read
			config_namespace: Namespace of the policy ConfigMap
			config_name: Name of the policy ConfigMap
		"""
		self.cluster = cluster
		self.config_namespace = config_namespace
		self.config_name = config_name

	def load_config(self) -> PolicyConfig:
		data = self.cluster.read_config_map(self.config_namespace, self.config_name)
		return parse_policy_config(data)

	def collect(self) -> ClusterSnapshot:
		"""
		Read claims, slices, policy and nodes, in that order.

		Returns:
			ClusterSnapshot for this cycle

		Raises:
			TransportError: If any read fails
			ConfigurationError: If the policy or a node label is malformed
		"""
		raw_claims = self.cluster.list_resource_claims()
		raw_slices = self.cluster.list_resource_slices()
		config = self.load_config()
		raw_nodes = self.cluster.list_nodes()

		slices = parse_resource_slices(raw_slices)
		claims = parse_resource_claims(raw_claims, slices, config)
		nodes = parse_nodes(raw_nodes, config)

		logger.info(
			f"Collected state: {len(claims)} reserved claims, {len(slices)} slices, "
			f"{len(nodes)} nodes, {len(config.devices)} catalog entries"
		)
		return ClusterSnapshot(
			claims=tuple(claims),
			slices=tuple(slices),
			nodes=tuple(nodes),
			config=config,
		)
