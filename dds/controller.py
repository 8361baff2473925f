"""Reconcile cycle and the timer/watch driven run loop."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from dds.actuator import RequestMutator
from dds.cluster_client import ClusterClient
from dds.collector import StateCollector
from dds.config import ControllerSettings
from dds.labels import LabelReconciler
from dds.reschedule import RescheduleCoordinator
from dds.scaling import ScalingAction, ScalingDecision, ScalingPolicy
from dds.state import (
    AllocationRequest,
    ClusterSnapshot,
    NodeInfo,
    ProvisionedDevice,
    format_timestamp,
    utc_now,
)
from dds.usage import UsageTracker

logger = logging.getLogger(__name__)


@dataclass
class CycleStatus:
    """Outcome of one reconcile cycle."""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    ok: bool = False
    error: Optional[str] = None
    nodes_processed: int = 0
    decisions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": format_timestamp(self.started_at) if self.started_at else None,
            "finished_at": format_timestamp(self.finished_at) if self.finished_at else None,
            "ok": self.ok,
            "error": self.error,
            "nodes_processed": self.nodes_processed,
            "decisions": list(self.decisions),
        }


def _decision_record(decision: ScalingDecision) -> Dict[str, Any]:
    return {
        "node": decision.node_name,
        "model": decision.model,
        "action": decision.action.value,
        "current_size": decision.current_size,
        "target_size": decision.target_size,
        "reason": decision.reason,
    }


class ResourceMonitor:
    """
    Drives the device scaler.

    One cycle collects a snapshot, stamps degraded-but-used devices, then
    for every node filters claims through the reschedule passes, applies
    scaling decisions and refreshes capability labels. The first error
    aborts the cycle; the run loop retries after an exponential backoff.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        settings: Optional[ControllerSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize the controller and its components.

        Args:
            cluster: Cluster access shared by all components
            settings: Controller settings (defaults if None)
            clock: Returns the current aware datetime
        """
        self.cluster = cluster
        self.settings = settings or ControllerSettings()
        self.clock = clock

        self.mutator = RequestMutator(cluster, clock=clock)
        self.collector = StateCollector(
            cluster,
            config_namespace=self.settings.config_namespace,
            config_name=self.settings.config_name,
        )
        self.usage = UsageTracker(cluster, self.mutator, clock=clock)
        self.rescheduler = RescheduleCoordinator(
            self.mutator,
            device_no_allocation_s=self.settings.device_no_allocation_s,
            clock=clock,
        )
        self.policy = ScalingPolicy(device_no_removal_s=self.settings.device_no_removal_s)
        self.labels = LabelReconciler(cluster, self.mutator)

        self.last_status = CycleStatus()
        self.last_success: Optional[datetime] = None
        self.consecutive_failures = 0

        self._cycle_lock = threading.Lock()
        self._trigger = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Reconcile cycle
    # ------------------------------------------------------------------
    def handle_node(self, node: NodeInfo, snapshot: ClusterSnapshot) -> List[ScalingDecision]:
        """
        Reschedule, scale and relabel a single node.

        Returns:
            The scaling decisions evaluated for the node
        """
        claims = self.rescheduler.filter(snapshot.claims_on(node.name))

        annotation = snapshot.config.last_used_annotation
        requests = [AllocationRequest.from_object(o) for o in self.cluster.list_allocation_requests()]
        provisioned = [
            ProvisionedDevice.from_object(o, annotation) for o in self.cluster.list_provisioned_devices()
        ]

        decisions = self.policy.evaluate(node, snapshot.config, claims, requests, provisioned, self.clock())
        for decision in decisions:
            if decision.action != ScalingAction.NONE:
                self.mutator.apply(decision)

        self.labels.reconcile(node.name, snapshot.config, current_labels=node.labels)
        return decisions

    def reconcile(self) -> CycleStatus:
        """
        Run one full cycle over every node.

        Returns:
            CycleStatus of the successful cycle

        Raises:
            DDSError: The first error hit; nodes handled before it keep their effects
        """
        with self._cycle_lock:
            status = CycleStatus(started_at=self.clock())
            try:
                snapshot = self.collector.collect()
                self.usage.update_last_used_time(snapshot)
                for node in snapshot.nodes:
                    decisions = self.handle_node(node, snapshot)
                    status.nodes_processed += 1
                    status.decisions.extend(_decision_record(d) for d in decisions if d.action != ScalingAction.NONE)
                status.ok = True
            except Exception as e:
                status.error = f"{type(e).__name__}: {e}"
                raise
            finally:
                status.finished_at = self.clock()
                self.last_status = status

            self.last_success = status.finished_at
            logger.info(
                f"Reconcile finished: {status.nodes_processed} nodes, "
                f"{len(status.decisions)} scaling actions"
            )
            return status

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------
    def next_delay(self) -> float:
        """Scan interval after success, exponential backoff after failures."""
        if self.consecutive_failures == 0:
            return self.settings.scan_interval_s
        backoff = self.settings.error_backoff_base_s * (2 ** (self.consecutive_failures - 1))
        return min(backoff, self.settings.error_backoff_max_s)

    def run_once(self) -> bool:
        """Run a cycle, recording the outcome for the backoff. Returns True on success."""
        try:
            self.reconcile()
        except Exception:
            self.consecutive_failures += 1
            logger.exception(f"Reconcile failed (consecutive failures: {self.consecutive_failures})")
            return False
        self.consecutive_failures = 0
        return True

    def trigger(self, reason: str = "") -> None:
        """Request an out-of-band cycle; repeated calls before it starts coalesce."""
        if reason:
            logger.debug(f"Reconcile triggered: {reason}")
        self._trigger.set()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._trigger.clear()
            self.run_once()
            if self._stop_event.is_set():
                break
            self._trigger.wait(self.next_delay())

    def start(self) -> None:
        if self._thread is not None:
            logger.warning("ResourceMonitor already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="resource-monitor", daemon=True)
        self._thread.start()
        logger.info(f"ResourceMonitor started, scan interval {self.settings.scan_interval_s}s")

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        self._trigger.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("ResourceMonitor stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
