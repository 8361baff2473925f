import sys
from datetime import timedelta
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from dds.actuator import RequestMutator
from dds.collector import StateCollector, parse_resource_slices
from dds.errors import ConfigurationError
from dds.state import ProvisionedDevice, parse_timestamp
from dds.usage import UsageTracker, find_red_device
from fakes import (
    CONFIG_NAME,
    CONFIG_NAMESPACE,
    PREFIX,
    T0,
    FakeClusterClient,
    make_claim,
    make_device,
    make_node,
    make_slice,
)

ANNOTATION = f"{PREFIX}/last-used-time"


@pytest.fixture
def cluster():
    cluster = FakeClusterClient()
    cluster.set_config()
    cluster.add_node(make_node("worker-1"))
    cluster.add_slice(make_slice(
        "slice-w1",
        "worker-1",
        [("gpu-0", "GPU-red", "A100 40G"), ("gpu-1", "GPU-green", "A100 40G")],
        health={"gpu-0": "red", "gpu-1": "green"},
    ))
    return cluster


@pytest.fixture
def tracker(cluster):
    return UsageTracker(cluster, RequestMutator(cluster, clock=lambda: T0), clock=lambda: T0)


def _snapshot(cluster):
    return StateCollector(cluster, CONFIG_NAMESPACE, CONFIG_NAME).collect()


def test_find_red_device():
    slices = parse_resource_slices([
        make_slice("s", "worker-1", [("gpu-0", "u0", "H100"), ("gpu-1", "u1", "H100")], health={"gpu-1": "RED"}),
    ])
    assert find_red_device("u0", slices) is None
    found = find_red_device("u1", slices)
    assert found is not None
    assert found[1].name == "gpu-1"
    assert find_red_device("missing", slices) is None


def test_stamps_red_device_used_by_running_pod(cluster, tracker):
    cluster.add_claim(make_claim("train", ["gpu-0"], reserved_for=["trainer"]))
    cluster.add_pod("default", "trainer", "Running")
    cluster.add_device(make_device("cr-red", "A100 40G", "worker-1", device_id="GPU-red"))

    stamped = tracker.update_last_used_time(_snapshot(cluster))

    assert stamped == ["cr-red"]
    assert cluster.devices["cr-red"]["metadata"]["annotations"][ANNOTATION] == "2025-06-01T12:00:00Z"


@pytest.mark.parametrize(
    "device_kwargs, pod_phase",
    [
        ({"device_id": "GPU-green"}, "Running"),
        ({"device_id": "GPU-red", "state": "Attaching"}, "Running"),
        ({"device_id": ""}, "Running"),
        ({"device_id": "GPU-red"}, "Succeeded"),
    ],
)
def test_skips_devices_not_in_degraded_use(cluster, tracker, device_kwargs, pod_phase):
    cluster.add_claim(make_claim("train", ["gpu-0", "gpu-1"], reserved_for=["trainer"]))
    cluster.add_pod("default", "trainer", pod_phase)
    cluster.add_device(make_device("cr-1", "A100 40G", "worker-1", **device_kwargs))

    assert tracker.update_last_used_time(_snapshot(cluster)) == []
    assert cluster.writes() == []


def test_red_device_without_claim_is_not_stamped(cluster, tracker):
    cluster.add_device(make_device("cr-red", "A100 40G", "worker-1", device_id="GPU-red"))
    assert tracker.update_last_used_time(_snapshot(cluster)) == []


def test_unreadable_last_used_time_is_ignored(caplog):
    obj = make_device("cr-1", "A100 40G", "worker-1", device_id="GPU-red")
    obj["metadata"]["annotations"] = {ANNOTATION: "not-a-time"}

    device = ProvisionedDevice.from_object(obj, ANNOTATION)

    assert device.name == "cr-1"
    assert device.last_used_time is None
    assert "Ignoring" in caplog.text


def test_unreadable_last_used_time_is_restamped(cluster, tracker):
    cluster.add_claim(make_claim("train", ["gpu-0"], reserved_for=["trainer"]))
    cluster.add_pod("default", "trainer", "Running")
    obj = make_device("cr-red", "A100 40G", "worker-1", device_id="GPU-red")
    obj["metadata"]["annotations"] = {ANNOTATION: "not-a-time"}
    cluster.add_device(obj)

    assert tracker.update_last_used_time(_snapshot(cluster)) == ["cr-red"]
    assert cluster.devices["cr-red"]["metadata"]["annotations"][ANNOTATION] == "2025-06-01T12:00:00Z"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2025-06-01T12:00:00Z", T0),
        ("2025-06-01T12:00:00.5Z", T0 + timedelta(milliseconds=500)),
        ("2025-06-01T12:00:00.123456789Z", T0 + timedelta(microseconds=123456)),
        ("2025-06-01T14:00:00+02:00", T0),
        ("", None),
        (None, None),
    ],
)
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == expected


@pytest.mark.parametrize("value", ["not-a-time", "2025-13-01T00:00:00Z", "yesterday"])
def test_parse_timestamp_rejects_garbage(value):
    with pytest.raises(ConfigurationError, match="invalid timestamp"):
        parse_timestamp(value)
