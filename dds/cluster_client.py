"""Narrow cluster access interface and its Kubernetes implementation."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional

from kubernetes import client, config, watch
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException

from dds.errors import ConflictError, MutationError, TransportError

logger = logging.getLogger(__name__)

DRA_GROUP = "resource.k8s.io"
DRA_VERSION = "v1beta1"
CRO_GROUP = "cro.hpsys.ibm.ie.com"
CRO_VERSION = "v1alpha1"

RESOURCE_CLAIMS = "resourceclaims"
RESOURCE_SLICES = "resourceslices"
COMPOSABILITY_REQUESTS = "composabilityrequests"
COMPOSABLE_RESOURCES = "composableresources"

WATCHABLE_KINDS = (RESOURCE_CLAIMS, RESOURCE_SLICES)


class ClusterClient(ABC):
    """
    Everything the controller needs from the cluster.

    Objects are exchanged as plain dicts in their JSON (camelCase) shape.
    Reads raise TransportError; patches raise ConflictError on a 409 and
    MutationError otherwise; creates raise MutationError, including when
    the name is already taken.
    """

    @abstractmethod
    def list_resource_claims(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def get_resource_claim(self, namespace: str, name: str) -> Dict[str, Any]: ...

    @abstractmethod
    def patch_resource_claim_status(self, namespace: str, name: str, patch: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def list_resource_slices(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def list_nodes(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def patch_node(self, name: str, patch: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def read_config_map(self, namespace: str, name: str) -> Dict[str, str]: ...

    @abstractmethod
    def get_pod(self, namespace: str, name: str) -> Dict[str, Any]: ...

    @abstractmethod
    def list_allocation_requests(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def get_allocation_request(self, name: str) -> Dict[str, Any]: ...

    @abstractmethod
    def create_allocation_request(self, body: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def patch_allocation_request(self, name: str, patch: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def list_provisioned_devices(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def get_provisioned_device(self, name: str) -> Dict[str, Any]: ...

    @abstractmethod
    def patch_provisioned_device(self, name: str, patch: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def watch(
        self,
        kind: str,
        timeout_seconds: int = 300,
        resource_version: Optional[str] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield raw watch events for one of WATCHABLE_KINDS until the server times out."""


def _read_error(e: ApiException, what: str) -> TransportError:
    return TransportError(f"failed to {what}: status={e.status}, reason={e.reason}", status=e.status)


def _write_error(e: ApiException, what: str) -> Exception:
    if e.status == 409:
        return ConflictError(f"conflict while trying to {what}: {e.reason}", status=e.status)
    return MutationError(f"failed to {what}: status={e.status}, reason={e.reason}", status=e.status)


def _create_error(e: ApiException, what: str) -> MutationError:
    # A create carries no resourceVersion, so its only 409 is AlreadyExists
    if e.status == 409:
        return MutationError(f"failed to {what}: already exists", status=e.status)
    return MutationError(f"failed to {what}: status={e.status}, reason={e.reason}", status=e.status)


class KubernetesClusterClient(ClusterClient):
    """ClusterClient backed by the official kubernetes Python client."""

    def __init__(
        self,
        api_client: Optional[ApiClient] = None,
        dra_version: str = DRA_VERSION,
    ) -> None:
        """
        Initialize the client.

        Args:
            api_client: Preconfigured ApiClient (built from the default config if None)
            dra_version: resource.k8s.io API version to talk to
        """
        self.api_client = api_client or ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)
        self.dra_version = dra_version

    @classmethod
    def from_environment(cls, dra_version: str = DRA_VERSION) -> "KubernetesClusterClient":
        """Load in-cluster config, falling back to the local kubeconfig."""
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        except config.ConfigException:
            config.load_kube_config()
            logger.info("Loaded kubeconfig")
        return cls(dra_version=dra_version)

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    # ------------------------------------------------------------------
    # resource.k8s.io
    # ------------------------------------------------------------------
    def list_resource_claims(self) -> List[Dict[str, Any]]:
        try:
            result = self.custom.list_cluster_custom_object(DRA_GROUP, self.dra_version, RESOURCE_CLAIMS)
        except ApiException as e:
            raise _read_error(e, "list ResourceClaims")
        return result.get("items", [])

    def get_resource_claim(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            return self.custom.get_namespaced_custom_object(
                DRA_GROUP, self.dra_version, namespace, RESOURCE_CLAIMS, name
            )
        except ApiException as e:
            raise _read_error(e, f"get ResourceClaim {namespace}/{name}")

    def patch_resource_claim_status(self, namespace: str, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.custom.patch_namespaced_custom_object_status(
                DRA_GROUP, self.dra_version, namespace, RESOURCE_CLAIMS, name, patch
            )
        except ApiException as e:
            raise _write_error(e, f"patch ResourceClaim {namespace}/{name} status")

    def list_resource_slices(self) -> List[Dict[str, Any]]:
        try:
            result = self.custom.list_cluster_custom_object(DRA_GROUP, self.dra_version, RESOURCE_SLICES)
        except ApiException as e:
            raise _read_error(e, "list ResourceSlices")
        return result.get("items", [])

    # ------------------------------------------------------------------
    # core/v1
    # ------------------------------------------------------------------
    def list_nodes(self) -> List[Dict[str, Any]]:
        try:
            nodes = self.core.list_node()
        except ApiException as e:
            raise _read_error(e, "list Nodes")
        return [self._to_dict(node) for node in nodes.items]

    def patch_node(self, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self._to_dict(self.core.patch_node(name, patch))
        except ApiException as e:
            raise _write_error(e, f"patch Node {name}")

    def read_config_map(self, namespace: str, name: str) -> Dict[str, str]:
        try:
            config_map = self.core.read_namespaced_config_map(name, namespace)
        except ApiException as e:
            raise _read_error(e, f"get ConfigMap {namespace}/{name}")
        return dict(config_map.data or {})

    def get_pod(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            return self._to_dict(self.core.read_namespaced_pod(name, namespace))
        except ApiException as e:
            raise _read_error(e, f"get Pod {namespace}/{name}")

    # ------------------------------------------------------------------
    # cro.hpsys.ibm.ie.com
    # ------------------------------------------------------------------
    def list_allocation_requests(self) -> List[Dict[str, Any]]:
        try:
            result = self.custom.list_cluster_custom_object(CRO_GROUP, CRO_VERSION, COMPOSABILITY_REQUESTS)
        except ApiException as e:
            raise _read_error(e, "list ComposabilityRequests")
        return result.get("items", [])

    def get_allocation_request(self, name: str) -> Dict[str, Any]:
        try:
            return self.custom.get_cluster_custom_object(CRO_GROUP, CRO_VERSION, COMPOSABILITY_REQUESTS, name)
        except ApiException as e:
            raise _read_error(e, f"get ComposabilityRequest {name}")

    def create_allocation_request(self, body: Dict[str, Any]) -> Dict[str, Any]:
        name = (body.get("metadata") or {}).get("name", "")
        try:
            return self.custom.create_cluster_custom_object(CRO_GROUP, CRO_VERSION, COMPOSABILITY_REQUESTS, body)
        except ApiException as e:
            raise _create_error(e, f"create ComposabilityRequest {name}")

    def patch_allocation_request(self, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.custom.patch_cluster_custom_object(
                CRO_GROUP, CRO_VERSION, COMPOSABILITY_REQUESTS, name, patch
            )
        except ApiException as e:
            raise _write_error(e, f"patch ComposabilityRequest {name}")

    def list_provisioned_devices(self) -> List[Dict[str, Any]]:
        try:
            result = self.custom.list_cluster_custom_object(CRO_GROUP, CRO_VERSION, COMPOSABLE_RESOURCES)
        except ApiException as e:
            raise _read_error(e, "list ComposableResources")
        return result.get("items", [])

    def get_provisioned_device(self, name: str) -> Dict[str, Any]:
        try:
            return self.custom.get_cluster_custom_object(CRO_GROUP, CRO_VERSION, COMPOSABLE_RESOURCES, name)
        except ApiException as e:
            raise _read_error(e, f"get ComposableResource {name}")

    def patch_provisioned_device(self, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.custom.patch_cluster_custom_object(
                CRO_GROUP, CRO_VERSION, COMPOSABLE_RESOURCES, name, patch
            )
        except ApiException as e:
            raise _write_error(e, f"patch ComposableResource {name}")

    def watch(
        self,
        kind: str,
        timeout_seconds: int = 300,
        resource_version: Optional[str] = None,
    ) -> Iterator[Dict[str, Any]]:
        if kind not in WATCHABLE_KINDS:
            raise ValueError(f"unsupported watch kind: {kind}")
        kwargs: Dict[str, Any] = {"timeout_seconds": timeout_seconds}
        if resource_version:
            kwargs["resource_version"] = resource_version
        w = watch.Watch()
        try:
            for event in w.stream(
                self.custom.list_cluster_custom_object,
                DRA_GROUP,
                self.dra_version,
                kind,
                **kwargs,
            ):
                yield event
        except ApiException as e:
            raise _read_error(e, f"watch {kind}")
        finally:
            w.stop()
