from __future__ import annotations

import re
import secrets
from datetime import datetime, timezone
from typing import Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .db import log_event
from .errors import InvalidSpec, ProviderError, QuotaExceeded, ReplicaNotFound
from .providers import FleetProvider
from .runtime import Lifecycle, Replica, ReplicaSpec
from .settings import settings


FLEET_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
ZONE_RE = re.compile(r"^[a-z0-9][a-z0-9\-]{0,62}$")

# Container limits per size class.
SIZE_CLASSES: dict[str, dict[str, Any]] = {
    "small": {"mem_limit": "256m", "nano_cpus": 500_000_000},
    "medium": {"mem_limit": "1g", "nano_cpus": 1_000_000_000},
    "large": {"mem_limit": "2g", "nano_cpus": 2_000_000_000},
}

_STATUS_TO_LIFECYCLE = {
    "created": Lifecycle.LAUNCHING,
    "restarting": Lifecycle.LAUNCHING,
    "running": Lifecycle.LAUNCHING,  # traffic membership is tracked by the fleet, not docker
    "paused": Lifecycle.LAUNCHING,
    "removing": Lifecycle.TERMINATED,
    "exited": Lifecycle.TERMINATED,
    "dead": Lifecycle.TERMINATED,
}


def validate_spec(spec: ReplicaSpec, zone: str) -> None:
    if not spec.image or any(c.isspace() for c in spec.image):
        raise InvalidSpec(f"invalid image reference {spec.image!r}")
    if spec.size_class not in SIZE_CLASSES:
        raise InvalidSpec(f"unknown size class {spec.size_class!r}; expected one of {sorted(SIZE_CLASSES)}")
    if not ZONE_RE.match(zone):
        raise InvalidSpec(f"invalid zone {zone!r}")
    if spec.zones and zone not in spec.zones:
        raise InvalidSpec(f"zone {zone!r} is not in the spec's zones {list(spec.zones)}")


def _parse_created(raw: str | None) -> float:
    # Docker reports e.g. 2024-05-01T10:11:12.123456789Z
    if not raw:
        return datetime.now(timezone.utc).timestamp()
    return datetime.strptime(raw[:19], "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc).timestamp()


class DockerFleetProvider(FleetProvider):
    """Runs replicas as containers on the local docker daemon.

    Containers are labelled with fleet, zone and spec so they can be
    re-discovered after a controller restart. Zones are labels only; all
    containers share one bridge network.
    """

    def __init__(
        self,
        fleet_name: str | None = None,
        network: str | None = None,
        port: int | None = None,
        client: docker.DockerClient | None = None,
    ):
        self.fleet_name = fleet_name or settings.fleet_name
        if not FLEET_NAME_RE.match(self.fleet_name):
            raise ValueError(
                "Invalid fleet name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
            )
        self.network = network or settings.docker_network
        self.port = int(port or settings.health_port)
        self._docker = client

    def _client(self) -> docker.DockerClient:
        if self._docker is None:
            try:
                self._docker = docker.from_env()
            except DockerException as e:
                raise ProviderError(f"Docker is not available: {e}") from e
        return self._docker

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")
            log_event("INFO", f"Created docker network '{self.network}'.", fleet=self.fleet_name)

    def _running_count(self) -> int:
        containers = self._client().containers.list(filters={"label": [f"fleetroll.fleet={self.fleet_name}"]})
        return len(containers)

    def create_replica(self, spec: ReplicaSpec, zone: str) -> str:
        validate_spec(spec, zone)
        try:
            self.ensure_network()
            if self._running_count() >= settings.max_replicas:
                raise QuotaExceeded(f"fleet {self.fleet_name} already runs {settings.max_replicas} containers")

            name = f"fr-{self.fleet_name}-{zone}-{secrets.token_hex(3)}"
            labels = {
                "fleetroll.fleet": self.fleet_name,
                "fleetroll.zone": zone,
                "fleetroll.image": spec.image,
                "fleetroll.size_class": spec.size_class,
                "fleetroll.zones": ",".join(spec.zones),
            }
            container = self._client().containers.run(
                spec.image,
                detach=True,
                name=name,
                network=self.network,
                labels=labels,
                environment={"PORT": str(self.port), "ZONE": zone},
                # Replacement of failed replicas is the controller's job.
                restart_policy={"Name": "no"},
                **SIZE_CLASSES[spec.size_class],
            )
        except ImageNotFound as e:
            raise InvalidSpec(f"image {spec.image} not found: {e}") from e
        except (APIError, DockerException) as e:
            raise ProviderError(f"{type(e).__name__}: {e}") from e

        log_event("INFO", f"Started container {name} from image {spec.image} in {zone}", fleet=self.fleet_name)
        return container.id

    def _get(self, replica_id: str) -> Any:
        try:
            return self._client().containers.get(replica_id)
        except NotFound as e:
            raise ReplicaNotFound(f"container {replica_id} not found") from e
        except (APIError, DockerException) as e:
            raise ProviderError(f"{type(e).__name__}: {e}") from e

    def destroy_replica(self, replica_id: str) -> None:
        cont = self._get(replica_id)
        try:
            cont.remove(force=True)
        except NotFound as e:
            raise ReplicaNotFound(f"container {replica_id} not found") from e
        except (APIError, DockerException) as e:
            raise ProviderError(f"{type(e).__name__}: {e}") from e

    def describe_replica(self, replica_id: str) -> Replica:
        cont = self._get(replica_id)
        labels = cont.labels or {}
        zones = tuple(z for z in labels.get("fleetroll.zones", "").split(",") if z)
        spec = ReplicaSpec(
            image=labels.get("fleetroll.image", ""),
            size_class=labels.get("fleetroll.size_class", "medium"),
            zones=zones,
        )
        return Replica(
            id=cont.id,
            zone=labels.get("fleetroll.zone", ""),
            spec=spec,
            lifecycle=_STATUS_TO_LIFECYCLE.get(cont.status, Lifecycle.LAUNCHING),
            created_at=_parse_created(cont.attrs.get("Created")),
            address=f"{cont.name}:{self.port}",
        )

    def replica_cpu(self, replica_id: str) -> float | None:
        """CPU percent from one docker stats sample (same formula as `docker stats`)."""
        try:
            stats = self._get(replica_id).stats(stream=False)
        except (ReplicaNotFound, ProviderError, APIError):
            return None
        cpu = stats.get("cpu_stats") or {}
        pre = stats.get("precpu_stats") or {}
        cpu_delta = cpu.get("cpu_usage", {}).get("total_usage", 0) - pre.get("cpu_usage", {}).get("total_usage", 0)
        sys_delta = cpu.get("system_cpu_usage", 0) - pre.get("system_cpu_usage", 0)
        online = cpu.get("online_cpus") or len(cpu.get("cpu_usage", {}).get("percpu_usage") or []) or 1
        if sys_delta <= 0 or cpu_delta < 0:
            return None
        return round(cpu_delta / sys_delta * online * 100.0, 2)
