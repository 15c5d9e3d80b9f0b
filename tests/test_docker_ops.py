import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from conftest import NEW

from fleetroll import docker_ops
from fleetroll.docker_ops import DockerFleetProvider, validate_spec
from fleetroll.errors import InvalidSpec, ProviderError, QuotaExceeded, ReplicaNotFound
from fleetroll.runtime import Lifecycle, ReplicaSpec
from fleetroll.settings import Settings


class FakeContainer:
    def __init__(self, cid, name, labels, stats=None):
        self.id = cid
        self.name = name
        self.labels = labels
        self.status = "running"
        self.attrs = {"Created": "2024-05-01T10:11:12.123456789Z"}
        self.removed = False
        self._stats = stats or {}

    def remove(self, force=False):
        self.removed = True

    def stats(self, stream=False):
        return self._stats


class FakeNetworks:
    def __init__(self):
        self.names = set()

    def get(self, name):
        if name not in self.names:
            raise NotFound("no such network")
        return name

    def create(self, name, driver="bridge"):
        self.names.add(name)


class FakeContainers:
    def __init__(self):
        self.by_id = {}
        self.run_error = None
        self.run_kwargs = None

    def list(self, filters=None):
        return list(self.by_id.values())

    def run(self, image, **kwargs):
        if self.run_error:
            raise self.run_error
        self.run_kwargs = dict(kwargs, image=image)
        cid = f"c{len(self.by_id) + 1}"
        self.by_id[cid] = FakeContainer(cid, kwargs["name"], kwargs["labels"])
        return self.by_id[cid]

    def get(self, cid):
        if cid not in self.by_id:
            raise NotFound("no such container")
        return self.by_id[cid]


class FakeClient:
    def __init__(self):
        self.networks = FakeNetworks()
        self.containers = FakeContainers()


@pytest.fixture
def docker_client():
    return FakeClient()


@pytest.fixture
def provider(docker_client):
    return DockerFleetProvider(fleet_name="web", network="fleetroll-test", port=8080, client=docker_client)


def test_validate_spec_rejects_bad_input():
    with pytest.raises(InvalidSpec):
        validate_spec(ReplicaSpec(image="web v2"), "eu-west-1a")
    with pytest.raises(InvalidSpec):
        validate_spec(ReplicaSpec(image="web:v2", size_class="huge"), "eu-west-1a")
    with pytest.raises(InvalidSpec):
        validate_spec(NEW, "us-east-1a")
    validate_spec(NEW, "eu-west-1b")


def test_create_replica_labels_and_limits(provider, docker_client):
    rid = provider.create_replica(NEW, "eu-west-1a")

    kw = docker_client.containers.run_kwargs
    assert kw["image"] == "web:v2"
    assert kw["network"] == "fleetroll-test"
    assert kw["labels"]["fleetroll.fleet"] == "web"
    assert kw["labels"]["fleetroll.zone"] == "eu-west-1a"
    assert kw["mem_limit"] == "1g"
    assert "fleetroll-test" in docker_client.networks.names

    r = provider.describe_replica(rid)
    assert r.id == rid
    assert r.zone == "eu-west-1a"
    assert r.spec == NEW
    assert r.lifecycle == Lifecycle.LAUNCHING
    assert r.address.endswith(":8080")


def test_missing_image_is_invalid_spec(provider, docker_client):
    docker_client.containers.run_error = ImageNotFound("pull access denied")
    with pytest.raises(InvalidSpec):
        provider.create_replica(NEW, "eu-west-1a")


def test_daemon_errors_are_retryable(provider, docker_client):
    docker_client.containers.run_error = APIError("daemon busy")
    with pytest.raises(ProviderError) as exc:
        provider.create_replica(NEW, "eu-west-1a")
    assert exc.value.retryable


def test_quota(provider, monkeypatch):
    monkeypatch.setattr(docker_ops, "settings", Settings(max_replicas=1))
    provider.create_replica(NEW, "eu-west-1a")
    with pytest.raises(QuotaExceeded):
        provider.create_replica(NEW, "eu-west-1b")


def test_destroy_and_missing_replica(provider, docker_client):
    rid = provider.create_replica(NEW, "eu-west-1a")
    provider.destroy_replica(rid)
    assert docker_client.containers.by_id[rid].removed

    with pytest.raises(ReplicaNotFound):
        provider.destroy_replica("nope")
    with pytest.raises(ReplicaNotFound):
        provider.describe_replica("nope")


def test_replica_cpu_uses_docker_stats_formula(provider, docker_client):
    rid = provider.create_replica(NEW, "eu-west-1a")
    docker_client.containers.by_id[rid]._stats = {
        "cpu_stats": {"cpu_usage": {"total_usage": 300}, "system_cpu_usage": 2000, "online_cpus": 2},
        "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
    }
    assert provider.replica_cpu(rid) == 40.0
    assert provider.replica_cpu("nope") is None
