"""Node capability labels derived from installed models and coexistence rules."""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Set, Tuple

from dds.actuator import RequestMutator
from dds.cluster_client import ClusterClient
from dds.state import AllocationRequest, PolicyConfig, ProvisionedDevice

logger = logging.getLogger(__name__)


def installed_models(
    node_name: str,
    requests: List[AllocationRequest],
    provisioned: List[ProvisionedDevice],
) -> Set[str]:
    """Models requested with a non-zero size, or online, on `node_name`."""
    models = {r.model for r in requests if r.target_node == node_name and r.size > 0}
    models |= {d.model for d in provisioned if d.target_node == node_name and d.online}
    return models


def requestable_labels(config: PolicyConfig, installed: Set[str]) -> Tuple[List[str], List[str]]:
    """
    Split the catalog's capability labels into labels to add and to delete.

    A model stays requestable unless some installed model lists its index in
    `cannot_coexist_with`.

    Returns:
        (add, delete) label keys, both in catalog order
    """
    excluded: Set[int] = set()
    for entry in config.devices:
        if entry.model_name in installed:
            excluded |= entry.cannot_coexist_with

    add: List[str] = []
    delete: List[str] = []
    for entry in config.devices:
        label = config.label_for(entry)
        if entry.index in excluded:
            delete.append(label)
        else:
            add.append(label)
    return add, delete


def labels_up_to_date(current: Mapping[str, str], add: List[str], delete: List[str]) -> bool:
    return all(current.get(label) == "true" for label in add) and not any(label in current for label in delete)


class LabelReconciler:
    """Keeps a node's `<prefix>/<device>` labels in line with what may still be requested."""

    def __init__(self, cluster: ClusterClient, mutator: RequestMutator) -> None:
        self.cluster = cluster
        self.mutator = mutator

    def reconcile(
        self,
        node_name: str,
        config: PolicyConfig,
        current_labels: Optional[Mapping[str, str]] = None,
    ) -> bool:
        """
        Recompute and patch one node's capability labels.

        Requests and provisioned devices are listed again so mutations made
        earlier in the cycle are reflected.

        Args:
            node_name: Node to label
            config: Policy with the device catalog and label prefix
            current_labels: Labels seen at collection time; a matching set skips the patch

        Returns:
            True if a patch was sent
        """
        requests = [AllocationRequest.from_object(o) for o in self.cluster.list_allocation_requests()]
        provisioned = [
            ProvisionedDevice.from_object(o, config.last_used_annotation)
            for o in self.cluster.list_provisioned_devices()
        ]

        installed = installed_models(node_name, requests, provisioned)
        add, delete = requestable_labels(config, installed)

        if current_labels is not None and labels_up_to_date(current_labels, add, delete):
            logger.debug(f"Node {node_name} labels already up to date")
            return False

        logger.debug(f"Node {node_name} installed models: {sorted(installed)}")
        self.mutator.patch_node_labels(node_name, add, delete)
        return True
