import sys
from datetime import timedelta
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from dds.config import parse_policy_config
from dds.scaling import ScalingAction, ScalingPolicy, count_active_devices, find_request
from dds.state import (
    AllocationRequest,
    ClaimDevice,
    ClaimInfo,
    DeviceState,
    ModelConstraints,
    NodeInfo,
    ProvisionedDevice,
)
from fakes import CONFIG_DATA, DRIVER, POOL, T0

MODEL = "A100 40G"


@pytest.fixture
def config():
    return parse_policy_config(CONFIG_DATA)


@pytest.fixture
def entry(config):
    return config.entry_for_device_name("nvidia-a100-40")


@pytest.fixture
def policy():
    return ScalingPolicy(device_no_removal_s=600)


def _node(min_device=0, max_device=0):
    return NodeInfo(
        name="worker-1",
        models=(ModelConstraints(MODEL, "nvidia-a100-40", min_device=min_device, max_device=max_device),),
    )


def _claim(name, devices, node="worker-1", state=DeviceState.HEALTHY, model=MODEL):
    return ClaimInfo(
        name=name,
        namespace="default",
        node_name=node,
        devices=tuple(ClaimDevice(name=d, driver=DRIVER, pool=POOL, model=model, state=state) for d in devices),
    )


def _request(size, name="nvidia-a100-40-abc"):
    return AllocationRequest(name=name, model=MODEL, target_node="worker-1", size=size, resource_version="7")


def test_count_active_devices_counts_distinct_devices():
    claims = [
        _claim("a", ["gpu-0", "gpu-1"]),
        _claim("b", ["gpu-1"]),
        _claim("c", ["gpu-2"], state=DeviceState.PREPARING),
        _claim("d", ["gpu-3"], state=DeviceState.FAILED),
        _claim("e", ["gpu-4"], node="worker-2"),
        _claim("f", ["gpu-5"], model="H100"),
    ]
    assert count_active_devices("worker-1", MODEL, claims) == 3


def test_find_request():
    requests = [
        AllocationRequest(name="r1", model=MODEL, target_node="worker-2", size=1),
        AllocationRequest(name="r2", model=MODEL, target_node="worker-1", size=2),
    ]
    assert find_request(requests, MODEL, "worker-1").name == "r2"
    assert find_request(requests, "H100", "worker-1") is None


def test_creates_request_for_min_device(policy, entry):
    decision = policy.decide(_node(min_device=2, max_device=6), entry, [], [], [], T0)

    assert decision.action == ScalingAction.CREATE
    assert decision.target_size == 2
    assert decision.request_name is None


def test_no_request_and_no_demand_is_noop(policy, entry):
    decision = policy.decide(_node(), entry, [], [], [], T0)
    assert decision.action == ScalingAction.NONE


def test_grows_request_to_active_count(policy, entry):
    claims = [_claim("train", [f"gpu-{i}" for i in range(5)])]
    decision = policy.decide(_node(), entry, claims, [_request(3)], [], T0)

    assert decision.action == ScalingAction.ATTACH
    assert decision.current_size == 3
    assert decision.target_size == 5
    assert decision.request_name == "nvidia-a100-40-abc"


def test_shrink_deferred_while_device_recently_used(policy, entry):
    claims = [_claim("train", ["gpu-0", "gpu-1"])]
    provisioned = [
        ProvisionedDevice(name="cr-1", model=MODEL, target_node="worker-1", state="Online"),
        ProvisionedDevice(
            name="cr-2",
            model=MODEL,
            target_node="worker-1",
            state="Online",
            last_used_time=T0 - timedelta(seconds=120),
        ),
    ]
    decision = policy.decide(_node(), entry, claims, [_request(5)], provisioned, T0)

    assert decision.action == ScalingAction.DEFER
    assert decision.target_size == 2
    assert "cr-2" in decision.reason


def test_shrinks_after_grace_period(policy, entry):
    claims = [_claim("train", ["gpu-0", "gpu-1"])]
    provisioned = [
        ProvisionedDevice(
            name="cr-2",
            model=MODEL,
            target_node="worker-1",
            state="Online",
            last_used_time=T0 - timedelta(seconds=601),
        ),
        ProvisionedDevice(
            name="cr-other-node",
            model=MODEL,
            target_node="worker-2",
            state="Online",
            last_used_time=T0,
        ),
    ]
    decision = policy.decide(_node(), entry, claims, [_request(5)], provisioned, T0)

    assert decision.action == ScalingAction.DETACH
    assert decision.current_size == 5
    assert decision.target_size == 2


def test_shrink_never_goes_below_min_device(policy, entry):
    decision = policy.decide(_node(min_device=3), entry, [], [_request(5)], [], T0)
    assert decision.action == ScalingAction.DETACH
    assert decision.target_size == 3


def test_max_device_is_advisory(policy, entry, caplog):
    claims = [_claim("train", [f"gpu-{i}" for i in range(4)])]
    decision = policy.decide(_node(max_device=2), entry, claims, [], [], T0)

    assert decision.action == ScalingAction.CREATE
    assert decision.target_size == 4
    assert "advisory max of 2" in caplog.text


def test_matching_request_is_noop(policy, entry):
    claims = [_claim("train", ["gpu-0", "gpu-1"])]
    decision = policy.decide(_node(min_device=1), entry, claims, [_request(2)], [], T0)
    assert decision.action == ScalingAction.NONE
    assert decision.target_size == 2


def test_evaluate_returns_decision_per_catalog_entry(policy, config):
    claims = [_claim("train", ["gpu-0"])]
    decisions = policy.evaluate(_node(), config, claims, [], [], T0)

    assert [d.model for d in decisions] == ["A100 40G", "A100 80G", "H100"]
    assert [d.action for d in decisions] == [ScalingAction.CREATE, ScalingAction.NONE, ScalingAction.NONE]


def test_evaluate_is_idempotent_once_applied(policy, config):
    claims = [_claim("train", ["gpu-0", "gpu-1"])]
    first = policy.evaluate(_node(), config, claims, [], [], T0)
    create = first[0]
    assert create.action == ScalingAction.CREATE

    applied = [AllocationRequest(name="r", model=MODEL, target_node="worker-1", size=create.target_size)]
    second = policy.evaluate(_node(), config, claims, applied, [], T0)
    assert all(d.action == ScalingAction.NONE for d in second)
