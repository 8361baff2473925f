import sys
import uuid
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from dds.actuator import RESCHEDULE_REASON, RequestMutator, resource_type_for_driver
from dds.config import parse_policy_config
from dds.errors import MutationError, RetriesExhaustedError
from dds.scaling import ScalingAction, ScalingDecision
from dds.state import ClaimDevice, ClaimInfo, DeviceState
from fakes import (
    CONFIG_DATA,
    DRIVER,
    POOL,
    PREFIX,
    T0,
    FakeClusterClient,
    condition,
    make_claim,
    make_device,
    make_node,
    make_request,
)


@pytest.fixture
def cluster():
    return FakeClusterClient()


@pytest.fixture
def mutator(cluster):
    return RequestMutator(cluster, clock=lambda: T0)


@pytest.fixture
def entry():
    return parse_policy_config(CONFIG_DATA).entry_for_device_name("nvidia-a100-40")


def test_resource_type_for_driver():
    assert resource_type_for_driver("gpu.nvidia.com") == "gpu"
    assert resource_type_for_driver("gpu.amd.com") == "gpu"
    assert resource_type_for_driver("fpga.example.com") == "fpga"
    assert resource_type_for_driver("") == "gpu"


def test_create_request(cluster, mutator, entry):
    name = mutator.create_request(entry, "worker-1", 2)

    assert name.startswith("nvidia-a100-40-")
    body = cluster.requests[name]
    assert body["kind"] == "ComposabilityRequest"
    assert body["apiVersion"] == "cro.hpsys.ibm.ie.com/v1alpha1"
    assert body["spec"]["resource"] == {
        "type": "gpu",
        "model": "A100 40G",
        "size": 2,
        "targetNode": "worker-1",
    }


def test_create_request_name_collision_is_not_retried(cluster, mutator, entry, monkeypatch):
    monkeypatch.setattr(uuid, "uuid4", lambda: uuid.UUID(int=0))
    cluster.add_request(make_request("nvidia-a100-40-00000000", "A100 40G", "worker-1", 3))

    with pytest.raises(MutationError, match="already exists"):
        mutator.create_request(entry, "worker-1", 1)

    assert len([c for c in cluster.calls if c[0] == "create_allocation_request"]) == 1
    assert len(cluster.requests) == 1
    assert cluster.requests["nvidia-a100-40-00000000"]["spec"]["resource"]["size"] == 3


def test_resize_request_patches_with_resource_version(cluster, mutator):
    cluster.add_request(make_request("r1", "A100 40G", "worker-1", 3))
    version = cluster.requests["r1"]["metadata"]["resourceVersion"]

    mutator.resize_request("r1", 5)

    assert cluster.requests["r1"]["spec"]["resource"]["size"] == 5
    assert cluster.requests["r1"]["spec"]["resource"]["model"] == "A100 40G"
    (patch_call,) = [c for c in cluster.calls if c[0] == "patch_allocation_request"]
    assert patch_call[1][1]["metadata"]["resourceVersion"] == version


def test_resize_request_skips_when_size_matches(cluster, mutator):
    cluster.add_request(make_request("r1", "A100 40G", "worker-1", 3))
    mutator.resize_request("r1", 3)
    assert cluster.writes() == []


def test_resize_request_rereads_after_conflict(cluster, mutator):
    cluster.add_request(make_request("r1", "A100 40G", "worker-1", 3))
    cluster.conflicts["patch_allocation_request"] = 1

    mutator.resize_request("r1", 1)

    assert cluster.requests["r1"]["spec"]["resource"]["size"] == 1
    reads = [c for c in cluster.calls if c[0] == "get_allocation_request"]
    assert len(reads) == 2


def test_resize_request_gives_up_after_two_conflicts(cluster, mutator):
    cluster.add_request(make_request("r1", "A100 40G", "worker-1", 3))
    cluster.conflicts["patch_allocation_request"] = 2

    with pytest.raises(RetriesExhaustedError):
        mutator.resize_request("r1", 1)
    assert cluster.requests["r1"]["spec"]["resource"]["size"] == 3


def test_resize_request_stale_version_is_a_conflict(cluster, mutator):
    cluster.add_request(make_request("r1", "A100 40G", "worker-1", 3))
    real_get = cluster.get_allocation_request
    stale = real_get("r1")
    cluster.add_request(make_request("r1", "A100 40G", "worker-1", 4))

    reads = []

    def get_once_stale(name):
        reads.append(name)
        return stale if len(reads) == 1 else real_get(name)

    cluster.get_allocation_request = get_once_stale
    mutator.resize_request("r1", 6)

    assert len(reads) == 2
    assert cluster.requests["r1"]["spec"]["resource"]["size"] == 6


def test_mutation_error_is_not_retried(cluster, mutator):
    cluster.add_request(make_request("r1", "A100 40G", "worker-1", 3))
    cluster.failures["patch_allocation_request"] = MutationError("forbidden", status=403)

    with pytest.raises(MutationError):
        mutator.resize_request("r1", 1)
    assert len([c for c in cluster.calls if c[0] == "patch_allocation_request"]) == 1


def test_annotate_device(cluster, mutator):
    cluster.add_device(make_device("cr-1", "A100 40G", "worker-1", device_id="GPU-aaa"))
    key = f"{PREFIX}/last-used-time"

    mutator.annotate_device("cr-1", key, "2025-06-01T12:00:00Z")
    assert cluster.devices["cr-1"]["metadata"]["annotations"][key] == "2025-06-01T12:00:00Z"
    assert cluster.devices["cr-1"]["status"]["deviceID"] == "GPU-aaa"

    writes = len(cluster.writes())
    mutator.annotate_device("cr-1", key, "2025-06-01T12:00:00Z")
    assert len(cluster.writes()) == writes


def _claim_info(devices):
    return ClaimInfo(
        name="train",
        namespace="ml",
        node_name="worker-1",
        devices=tuple(
            ClaimDevice(name=d, driver=DRIVER, pool=POOL, model="A100 40G", state=DeviceState.FAILED)
            for d in devices
        ),
    )


def test_signal_reschedule_marks_every_device(cluster, mutator):
    cluster.add_claim(make_claim(
        "train",
        ["gpu-0", "gpu-1"],
        namespace="ml",
        conditions={"gpu-0": [condition("FabricDeviceFailed")]},
    ))

    assert mutator.signal_reschedule(_claim_info(["gpu-0", "gpu-1"])) is True

    devices = cluster.claims[("ml", "train")]["status"]["devices"]
    assert [d["device"] for d in devices] == ["gpu-0", "gpu-1"]
    for device in devices:
        reschedule = [c for c in device["conditions"] if c["type"] == "FabricDeviceReschedule"]
        assert len(reschedule) == 1
        assert reschedule[0]["status"] == "True"
        assert reschedule[0]["reason"] == RESCHEDULE_REASON
        assert reschedule[0]["lastTransitionTime"] == "2025-06-01T12:00:00Z"
    assert devices[0]["conditions"][0]["type"] == "FabricDeviceFailed"
    assert cluster.claims[("ml", "train")]["status"]["reservedFor"][0]["name"] == "pod-a"


def test_signal_reschedule_is_idempotent(cluster, mutator):
    cluster.add_claim(make_claim("train", ["gpu-0"], namespace="ml"))
    claim = _claim_info(["gpu-0"])

    assert mutator.signal_reschedule(claim) is True
    assert mutator.signal_reschedule(claim) is False
    assert len([c for c in cluster.calls if c[0] == "patch_resource_claim_status"]) == 1


def test_patch_node_labels(cluster, mutator):
    cluster.add_node(make_node("worker-1", {f"{PREFIX}/nvidia-a100-80g": "true", "zone": "a"}))

    mutator.patch_node_labels("worker-1", [f"{PREFIX}/nvidia-a100-40"], [f"{PREFIX}/nvidia-a100-80g"])

    assert cluster.nodes["worker-1"]["metadata"]["labels"] == {
        f"{PREFIX}/nvidia-a100-40": "true",
        "zone": "a",
    }


def test_apply_dispatches_on_action(cluster, mutator, entry):
    cluster.add_request(make_request("r1", "A100 40G", "worker-1", 5))

    mutator.apply(ScalingDecision("worker-1", entry, ScalingAction.DEFER, 2, 5, "r1"))
    mutator.apply(ScalingDecision("worker-1", entry, ScalingAction.NONE, 5, 5, "r1"))
    assert cluster.writes() == []

    mutator.apply(ScalingDecision("worker-1", entry, ScalingAction.DETACH, 2, 5, "r1"))
    assert cluster.requests["r1"]["spec"]["resource"]["size"] == 2

    mutator.apply(ScalingDecision("worker-2", entry, ScalingAction.CREATE, 1))
    created = [r for r in cluster.requests.values() if r["spec"]["resource"]["targetNode"] == "worker-2"]
    assert len(created) == 1
