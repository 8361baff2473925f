"""Reschedule signalling for failed and stuck claims."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Sequence

from dds.actuator import RequestMutator
from dds.state import ClaimInfo, DeviceState, utc_now

logger = logging.getLogger(__name__)


class RescheduleCoordinator:
    """
    Drops claims that must not count toward a node's demand.

    A claim leaves the working set when one of its devices failed, when it
    is already marked for rescheduling, or when a device has stayed unbound
    past the allocation timeout. Failed and stuck claims get a reschedule
    condition so the scheduler can move the workload; the coordinator never
    moves workloads itself.
    """

    def __init__(
        self,
        mutator: RequestMutator,
        device_no_allocation_s: float = 600.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.mutator = mutator
        self.allocation_timeout = timedelta(seconds=device_no_allocation_s)
        self.clock = clock

    def reschedule_failed(self, claims: Sequence[ClaimInfo]) -> List[ClaimInfo]:
        remaining: List[ClaimInfo] = []
        for claim in claims:
            if claim.has_state(DeviceState.RESCHEDULE):
                logger.debug(f"Claim {claim.namespace}/{claim.name} already rescheduling, skipping")
                continue
            if claim.has_state(DeviceState.FAILED):
                logger.info(f"Claim {claim.namespace}/{claim.name} has a failed device")
                self.mutator.signal_reschedule(claim)
                continue
            remaining.append(claim)
        return remaining

    def is_stuck(self, claim: ClaimInfo, now: datetime) -> bool:
        if claim.created_at is None:
            return False
        if all(device.bound for device in claim.devices):
            return False
        return now - claim.created_at > self.allocation_timeout

    def reschedule_stuck(self, claims: Sequence[ClaimInfo]) -> List[ClaimInfo]:
        now = self.clock()
        remaining: List[ClaimInfo] = []
        for claim in claims:
            if self.is_stuck(claim, now):
                logger.info(
                    f"Claim {claim.namespace}/{claim.name} unbound for longer than "
                    f"{self.allocation_timeout.total_seconds():.0f}s"
                )
                self.mutator.signal_reschedule(claim)
                continue
            remaining.append(claim)
        return remaining

    def filter(self, claims: Sequence[ClaimInfo]) -> List[ClaimInfo]:
        """Run the failed pass then the timeout pass; returns the surviving claims."""
        return self.reschedule_stuck(self.reschedule_failed(claims))
