"""Conflict-safe mutations of requests, devices, claims and nodes."""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Callable, Dict, Iterable, Optional

from dds.cluster_client import CRO_GROUP, CRO_VERSION, ClusterClient
from dds.retry import MAX_RETRIES, retry_on_conflict
from dds.scaling import ScalingAction, ScalingDecision
from dds.state import (
    DEVICE_RESCHEDULE_CONDITION,
    ClaimInfo,
    DeviceCatalogEntry,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

RESCHEDULE_REASON = "DeviceRescheduleRequested"

DRIVER_TYPES: Dict[str, str] = {
    "gpu.nvidia.com": "gpu",
    "gpu.amd.com": "gpu",
    "gpu.intel.com": "gpu",
}


def resource_type_for_driver(driver_name: str) -> str:
    """Map a DRA driver name to the provisioning API's resource type."""
    if driver_name in DRIVER_TYPES:
        return DRIVER_TYPES[driver_name]
    return driver_name.split(".", 1)[0] if driver_name else "gpu"


class RequestMutator:
    """Applies scaling decisions and other writes with a bounded conflict retry."""

    def __init__(
        self,
        cluster: ClusterClient,
        attempts: int = MAX_RETRIES,
        clock: Callable = utc_now,
    ) -> None:
        """
        Initialize the mutator.

        Args:
            cluster: Cluster access used for every read and write
            attempts: Attempts per write under conflicts
            clock: Returns the current aware datetime
        """
        self.cluster = cluster
        self.attempts = attempts
        self.clock = clock

    def _retry(self, operation: Callable, description: str):
        return retry_on_conflict(operation, description=description, attempts=self.attempts)

    def create_request(self, entry: DeviceCatalogEntry, node_name: str, size: int) -> str:
        """
        Create an allocation request for `size` devices of `entry` on a node.

        A create is not retried; a name collision surfaces as a MutationError.

        Returns:
            Name of the created request

        Raises:
            MutationError: If the create fails, including an already existing name
        """
        name = f"{entry.k8s_device_name}-{uuid.uuid4().hex[:8]}"
        body = {
            "apiVersion": f"{CRO_GROUP}/{CRO_VERSION}",
            "kind": "ComposabilityRequest",
            "metadata": {"name": name},
            "spec": {
                "resource": {
                    "type": resource_type_for_driver(entry.driver_name),
                    "model": entry.model_name,
                    "size": size,
                    "targetNode": node_name,
                },
            },
        }
        logger.info(f"Creating ComposabilityRequest {name} for {size} x {entry.model_name} on {node_name}")
        self.cluster.create_allocation_request(body)
        return name

    def resize_request(self, name: str, size: int) -> None:
        """Set an existing request's size, re-reading it on every attempt."""
        logger.info(f"Patching request {name} size to {size}")

        def _resize() -> None:
            current = self.cluster.get_allocation_request(name)
            metadata = current.get("metadata") or {}
            resource = (current.get("spec") or {}).get("resource") or {}
            if int(resource.get("size") or 0) == size:
                return
            patch = {
                "metadata": {"resourceVersion": metadata.get("resourceVersion")},
                "spec": {"resource": {"size": size}},
            }
            self.cluster.patch_allocation_request(name, patch)

        self._retry(_resize, f"resize request {name}")

    def annotate_device(self, name: str, key: str, value: str) -> None:
        """Set one annotation on a provisioned device; no write when it already matches."""
        logger.info(f"Patching device {name} annotation {key}={value}")

        def _annotate() -> None:
            current = self.cluster.get_provisioned_device(name)
            metadata = current.get("metadata") or {}
            if (metadata.get("annotations") or {}).get(key) == value:
                return
            patch = {
                "metadata": {
                    "resourceVersion": metadata.get("resourceVersion"),
                    "annotations": {key: value},
                },
            }
            self.cluster.patch_provisioned_device(name, patch)

        self._retry(_annotate, f"annotate device {name}")

    def signal_reschedule(self, claim: ClaimInfo, condition_type: str = DEVICE_RESCHEDULE_CONDITION) -> bool:
        """
        Mark every device of a claim with a true `condition_type` condition.

        Devices the driver has not reported yet get a status entry built from
        the allocation so the signal is never lost.

        Returns:
            True if the claim was patched, False if it already carried the condition
        """
        logger.info(f"Signalling {condition_type} on ResourceClaim {claim.namespace}/{claim.name}")

        def _signal() -> bool:
            current = self.cluster.get_resource_claim(claim.namespace, claim.name)
            metadata = current.get("metadata") or {}
            devices = copy.deepcopy((current.get("status") or {}).get("devices") or [])

            reported = {(d.get("driver", ""), d.get("pool", ""), d.get("device", "")) for d in devices}
            for device in claim.devices:
                if device.key not in reported:
                    devices.append({"driver": device.driver, "pool": device.pool, "device": device.name})

            now = format_timestamp(self.clock())
            condition = {
                "type": condition_type,
                "status": "True",
                "lastTransitionTime": now,
                "reason": RESCHEDULE_REASON,
                "message": "device scaler requested the claim be rescheduled",
            }

            changed = False
            for device in devices:
                conditions = device.get("conditions") or []
                for i, existing in enumerate(conditions):
                    if existing.get("type") == condition_type:
                        if existing.get("status") != "True":
                            conditions[i] = dict(condition)
                            changed = True
                        break
                else:
                    conditions.append(dict(condition))
                    changed = True
                device["conditions"] = conditions

            if not changed:
                return False

            patch = {
                "metadata": {"resourceVersion": metadata.get("resourceVersion")},
                "status": {"devices": devices},
            }
            self.cluster.patch_resource_claim_status(claim.namespace, claim.name, patch)
            return True

        return self._retry(_signal, f"reschedule claim {claim.namespace}/{claim.name}")

    def patch_node_labels(self, node_name: str, add: Iterable[str], delete: Iterable[str]) -> None:
        """Add labels (value "true") and remove labels in one patch."""
        labels: Dict[str, Optional[str]] = {}
        for label in add:
            labels[label] = "true"
        for label in delete:
            labels[label] = None
        logger.info(f"Patching node {node_name} labels: {labels}")

        def _patch() -> None:
            self.cluster.patch_node(node_name, {"metadata": {"labels": labels}})

        self._retry(_patch, f"patch node {node_name} labels")

    def apply(self, decision: ScalingDecision) -> None:
        """Carry out a scaling decision; DEFER and NONE are no-ops."""
        if decision.action == ScalingAction.CREATE:
            self.create_request(decision.entry, decision.node_name, decision.target_size)
        elif decision.action in (ScalingAction.ATTACH, ScalingAction.DETACH):
            logger.info(
                f"{decision.action.value.capitalize()} {decision.model} on {decision.node_name}: "
                f"{decision.current_size} -> {decision.target_size}"
            )
            self.resize_request(decision.request_name, decision.target_size)
        elif decision.action == ScalingAction.DEFER:
            logger.info(
                f"Deferring detach of {decision.model} on {decision.node_name} "
                f"({decision.current_size} -> {decision.target_size}): {decision.reason}"
            )
