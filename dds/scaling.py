"""Scaling decisions: how many devices of each model a node should request."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence

from dds.state import (
    AllocationRequest,
    ClaimInfo,
    DeviceCatalogEntry,
    DeviceState,
    NodeInfo,
    PolicyConfig,
    ProvisionedDevice,
)

logger = logging.getLogger(__name__)

_COUNTED_STATES = (DeviceState.HEALTHY, DeviceState.PREPARING)


class ScalingAction(Enum):
    """What to do with the allocation request of one (node, model) pair."""
    CREATE = "create"
    ATTACH = "attach"
    DETACH = "detach"
    DEFER = "defer"
    NONE = "none"


@dataclass(frozen=True)
class ScalingDecision:
    """
    A single scaling decision for one model on one node.

    Attributes:
        node_name: Target node
        entry: Catalog entry of the model
        action: What the mutator should do
        target_size: Device count the request should end up at
        current_size: Size of the existing request (0 when there is none)
        request_name: Existing request to resize, None for CREATE
        reason: Human-readable explanation
    """
    node_name: str
    entry: DeviceCatalogEntry
    action: ScalingAction
    target_size: int
    current_size: int = 0
    request_name: Optional[str] = None
    reason: str = ""

    @property
    def model(self) -> str:
        return self.entry.model_name


def count_active_devices(node_name: str, model: str, claims: Sequence[ClaimInfo]) -> int:
    """Distinct devices of `model` held on `node_name` by healthy or preparing claims."""
    seen = set()
    for claim in claims:
        if claim.node_name != node_name:
            continue
        for device in claim.devices:
            if device.model == model and device.state in _COUNTED_STATES:
                seen.add(device.key)
    return len(seen)


def find_request(requests: Sequence[AllocationRequest], model: str, node_name: str) -> Optional[AllocationRequest]:
    for request in requests:
        if request.model == model and request.target_node == node_name:
            return request
    return None


class ScalingPolicy:
    """Per node, per model attach/detach policy with a removal grace period."""

    def __init__(self, device_no_removal_s: float = 600.0) -> None:
        """
        Args:
            device_no_removal_s: A device used within this many seconds blocks any shrink
        """
        self.no_removal = timedelta(seconds=device_no_removal_s)

    def removal_blocked(
        self,
        node_name: str,
        model: str,
        provisioned: Sequence[ProvisionedDevice],
        now: datetime,
    ) -> Optional[ProvisionedDevice]:
        """Return a device of (model, node) still inside its grace window, if any."""
        cutoff = now - self.no_removal
        for device in provisioned:
            if device.model != model or device.target_node != node_name:
                continue
            if device.last_used_time is not None and device.last_used_time > cutoff:
                return device
        return None

    def decide(
        self,
        node: NodeInfo,
        entry: DeviceCatalogEntry,
        claims: Sequence[ClaimInfo],
        requests: Sequence[AllocationRequest],
        provisioned: Sequence[ProvisionedDevice],
        now: datetime,
    ) -> ScalingDecision:
        model = entry.model_name
        active = count_active_devices(node.name, model, claims)
        configured = max(active, node.min_device_for(model))

        max_device = node.max_device_for(model)
        if max_device and configured > max_device:
            logger.warning(
                f"Node {node.name} needs {configured} x {model}, above its advisory max of {max_device}"
            )

        request = find_request(requests, model, node.name)
        if request is None:
            if configured > 0:
                return ScalingDecision(
                    node_name=node.name,
                    entry=entry,
                    action=ScalingAction.CREATE,
                    target_size=configured,
                    reason=f"no request, need {configured} (active={active})",
                )
            return ScalingDecision(node_name=node.name, entry=entry, action=ScalingAction.NONE, target_size=0)

        if configured > request.size:
            return ScalingDecision(
                node_name=node.name,
                entry=entry,
                action=ScalingAction.ATTACH,
                target_size=configured,
                current_size=request.size,
                request_name=request.name,
                reason=f"need {configured} > requested {request.size}",
            )

        if configured < request.size:
            blocker = self.removal_blocked(node.name, model, provisioned, now)
            if blocker is not None:
                return ScalingDecision(
                    node_name=node.name,
                    entry=entry,
                    action=ScalingAction.DEFER,
                    target_size=configured,
                    current_size=request.size,
                    request_name=request.name,
                    reason=f"{blocker.name} last used at {blocker.last_used_time.isoformat()}",
                )
            return ScalingDecision(
                node_name=node.name,
                entry=entry,
                action=ScalingAction.DETACH,
                target_size=configured,
                current_size=request.size,
                request_name=request.name,
                reason=f"need {configured} < requested {request.size}",
            )

        return ScalingDecision(
            node_name=node.name,
            entry=entry,
            action=ScalingAction.NONE,
            target_size=configured,
            current_size=request.size,
            request_name=request.name,
        )

    def evaluate(
        self,
        node: NodeInfo,
        config: PolicyConfig,
        claims: Sequence[ClaimInfo],
        requests: Sequence[AllocationRequest],
        provisioned: Sequence[ProvisionedDevice],
        now: datetime,
    ) -> List[ScalingDecision]:
        """
        Compute one decision per catalog entry, in catalog order.

        Args:
            node: Node being scaled
            config: Policy with the device catalog
            claims: Claims on this node that survived rescheduling
            requests: Current allocation requests (any node)
            provisioned: Current provisioned devices (any node)
            now: Reference time for the removal grace period

        Returns:
            List of decisions; NONE entries are included so callers can log them
        """
        decisions = [
            self.decide(node, entry, claims, requests, provisioned, now)
            for entry in config.devices
        ]
        counts: Dict[str, int] = {}
        for decision in decisions:
            counts[decision.action.value] = counts.get(decision.action.value, 0) + 1
        logger.debug(f"Evaluated node {node.name}: {counts}")
        return decisions
