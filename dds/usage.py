"""Last-used stamping for degraded devices that still serve workloads."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from dds.actuator import RequestMutator
from dds.cluster_client import ClusterClient
from dds.state import (
    ClaimInfo,
    ClusterSnapshot,
    ProvisionedDevice,
    SliceDevice,
    SliceInfo,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

POD_RESOURCE = "pods"
POD_RUNNING = "Running"


def find_red_device(device_id: str, slices: Sequence[SliceInfo]) -> Optional[Tuple[SliceInfo, SliceDevice]]:
    """Locate the slice device publishing `device_id` if it is flagged red."""
    for resource_slice in slices:
        for device in resource_slice.devices:
            if device.uuid == device_id and device.is_red:
                return resource_slice, device
    return None


class UsageTracker:
    """Stamps `<prefix>/last-used-time` on red devices a running pod still uses."""

    def __init__(
        self,
        cluster: ClusterClient,
        mutator: RequestMutator,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cluster = cluster
        self.mutator = mutator
        self.clock = clock

    def is_used_by_running_pod(
        self,
        resource_slice: SliceInfo,
        device: SliceDevice,
        claims: Sequence[ClaimInfo],
    ) -> bool:
        for claim in claims:
            if not claim.uses_device(resource_slice.driver, resource_slice.pool, device.name):
                continue
            for consumer in claim.consumers:
                if consumer.resource != POD_RESOURCE:
                    continue
                pod = self.cluster.get_pod(claim.namespace, consumer.name)
                if (pod.get("status") or {}).get("phase") == POD_RUNNING:
                    return True
        return False

    def update_last_used_time(self, snapshot: ClusterSnapshot) -> List[str]:
        """
        Stamp every online, red, in-use provisioned device.

        Args:
            snapshot: This cycle's cluster snapshot

        Returns:
            Names of the devices that were stamped
        """
        annotation = snapshot.config.last_used_annotation
        devices = [
            ProvisionedDevice.from_object(obj, annotation)
            for obj in self.cluster.list_provisioned_devices()
        ]

        stamped: List[str] = []
        for device in devices:
            if not device.online or not device.device_id:
                continue
            owner = find_red_device(device.device_id, snapshot.slices)
            if owner is None:
                continue
            resource_slice, slice_device = owner
            if not self.is_used_by_running_pod(resource_slice, slice_device, snapshot.claims):
                continue
            self.mutator.annotate_device(device.name, annotation, format_timestamp(self.clock()))
            stamped.append(device.name)

        if stamped:
            logger.info(f"Stamped last-used time on {len(stamped)} degraded devices: {stamped}")
        return stamped
