"""Claim and slice watches that trigger out-of-band reconcile cycles."""

from __future__ import annotations

import threading
import logging
from typing import Callable, Dict, List, Optional

from dds.cluster_client import WATCHABLE_KINDS, ClusterClient
from dds.errors import TransportError

logger = logging.getLogger(__name__)

TRIGGER_EVENTS = ("ADDED", "MODIFIED", "DELETED")


class ResourceWatcher:
	"""
	Streams ResourceClaim and ResourceSlice events in daemon threads.

	Every add/update/delete calls `on_event`; the controller coalesces
	bursts into a single cycle. Streams restart after errors and resume
	from the last seen resourceVersion.
	"""

	def __init__(
		self,
		cluster: ClusterClient,
		on_event: Callable[[str], None],
		timeout_seconds: int = 300,
		retry_delay_s: float = 5.0,
	) -> None:
		self.cluster = cluster
		self.on_event = on_event
		self.timeout_seconds = timeout_seconds
		self.retry_delay_s = retry_delay_s

		self._stop_event = threading.Event()
		self._threads: List[threading.Thread] = []
		self._resource_versions: Dict[str, Optional[str]] = {kind: None for kind in WATCHABLE_KINDS}

	def start(self) -> None:
		"""Start one watch thread per kind."""
		if self._threads:
			logger.warning("ResourceWatcher already running")
			return

		self._stop_event.clear()
		for kind in WATCHABLE_KINDS:
			thread = threading.Thread(
				target=self._watch_loop,
				args=(kind,),
				name=f"watch-{kind}",
				daemon=True,
			)
			thread.start()
			self._threads.append(thread)
		logger.info(f"ResourceWatcher started for {', '.join(WATCHABLE_KINDS)}")

	def stop(self) -> None:
		self._stop_event.set()
		for thread in self._threads:
			thread.join(timeout=5.0)
		self._threads.clear()
		logger.info("ResourceWatcher stopped")

	def handle_event(self, kind: str, event: Dict) -> None:
		event_type = event.get("type")
		obj = event.get("object") or {}
		metadata = (obj.get("metadata") or {}) if isinstance(obj, dict) else {}
		if metadata.get("resourceVersion"):
			self._resource_versions[kind] = metadata["resourceVersion"]
		if event_type in TRIGGER_EVENTS:
			self.on_event(f"{kind} {event_type} {metadata.get('name', '')}".strip())

	def _watch_loop(self, kind: str) -> None:
		while not self._stop_event.is_set():
			try:
				for event in self.cluster.watch(
					kind,
					timeout_seconds=self.timeout_seconds,
					resource_version=self._resource_versions[kind],
				):
					if self._stop_event.is_set():
						break
					self.handle_event(kind, event)
			except TransportError as e:
				if e.status == 410:
					logger.info(f"Watch on {kind} expired, relisting")
					self._resource_versions[kind] = None
					continue
				logger.error(f"Error watching {kind}: {e}")
				self._stop_event.wait(self.retry_delay_s)
			except Exception as e:
				logger.error(f"Error watching {kind}: {e}")
				self._stop_event.wait(self.retry_delay_s)
