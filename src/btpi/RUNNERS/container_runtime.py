# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""
Read-mostly access to the container runtime: introspection used by readiness
checks and diagnostics, plus the few mutations needed for networks and rollback.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import docker
from docker.errors import DockerException, NotFound
from requests.exceptions import RequestException

from ..MODELS.deployment_config import NetworkSpec

logger = logging.getLogger(__name__)

# A daemon that went away surfaces as a requests error, not a DockerException
DAEMON_ERRORS = (DockerException, RequestException)


@dataclass
class ContainerInfo:
    """Snapshot of a container's state."""

    name: str
    status: str
    health: Optional[str] = None
    ports: List[str] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.status == "running"


@dataclass
class NetworkInfo:
    """Snapshot of an existing network."""

    name: str
    driver: str = "bridge"
    subnets: List[str] = field(default_factory=list)


class ContainerRuntime:
    """
    Thin wrapper over the Docker SDK. Lookups of missing objects return
    None/False instead of raising. Transport failures are logged and treated
    the same way, except for network calls, which raise DockerException.
    """
    def __init__(self, client: Optional[docker.DockerClient] = None):
        """
        :param client: An existing client, otherwise one is created from the environment on first use.
        """
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def ping(self) -> bool:
        """True if the Docker daemon answers."""
        try:
            return bool(self.client.ping())
        except DAEMON_ERRORS as e:
            logger.error(f"Docker daemon is not reachable: {e}")
            return False

    def inspect(self, name: str) -> Optional[ContainerInfo]:
        """
        Returns the container's state, or None if it does not exist.
        """
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return None
        except DAEMON_ERRORS as e:
            logger.warning(f"Failed to inspect container {name}: {e}")
            return None

        state = container.attrs.get("State", {})
        health = (state.get("Health") or {}).get("Status")
        ports = []
        for container_port, bindings in (container.attrs.get("NetworkSettings", {}).get("Ports") or {}).items():
            for binding in bindings or []:
                ports.append(f"{binding.get('HostPort')}->{container_port}")
        return ContainerInfo(
            name=name,
            status=state.get("Status", container.status),
            health=health,
            ports=ports,
        )

    def exists(self, name: str) -> bool:
        return self.inspect(name) is not None

    def is_running(self, name: str) -> bool:
        info = self.inspect(name)
        return info is not None and info.running

    def health_status(self, name: str) -> Optional[str]:
        """
        Docker health status ("starting", "healthy", "unhealthy"),
        or None when the container has no health check.
        """
        info = self.inspect(name)
        return info.health if info else None

    def tail_logs(self, name: str, lines: int = 10) -> List[str]:
        """Returns the last lines of the container's log stream."""
        if lines <= 0:
            return []
        try:
            output = self.client.containers.get(name).logs(tail=lines)
        except DAEMON_ERRORS as e:
            logger.debug(f"Could not retrieve logs for {name}: {e}")
            return []
        return output.decode("utf-8", errors="replace").splitlines()

    def exec(self, name: str, command: Sequence[str]) -> Tuple[int, str]:
        """
        Runs a command inside a running container.

        :return: Exit code and combined output. A missing container yields exit code -1.
        """
        try:
            result = self.client.containers.get(name).exec_run(list(command))
        except NotFound:
            return -1, f"container {name} not found"
        except DAEMON_ERRORS as e:
            return -1, str(e)
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return result.exit_code, output

    def stop_and_remove(self, name: str, timeout: int = 10) -> bool:
        """
        Stops and removes a container.

        :return: True if the container is gone afterwards.
        """
        try:
            container = self.client.containers.get(name)
            if container.status == "running":
                container.stop(timeout=timeout)
            container.remove()
        except NotFound:
            return True
        except DAEMON_ERRORS as e:
            logger.error(f"Failed to remove container {name}: {e}")
            return False
        return True

    def get_network(self, name: str) -> Optional[NetworkInfo]:
        """
        Returns an existing network by exact name.

        :raises docker.errors.DockerException: If the daemon cannot be queried.
        """
        try:
            networks = self.client.networks.list(names=[name])
        except RequestException as e:
            raise DockerException(f"Failed to list networks: {e}") from e
        for network in networks:
            if network.name != name:
                continue
            ipam = (network.attrs.get("IPAM") or {}).get("Config") or []
            return NetworkInfo(
                name=network.name,
                driver=network.attrs.get("Driver", "bridge"),
                subnets=[entry["Subnet"] for entry in ipam if entry.get("Subnet")],
            )
        return None

    def create_network(self, spec: NetworkSpec) -> NetworkInfo:
        """
        Creates a network with a fixed address range.

        :raises docker.errors.DockerException: If the daemon rejects the network or cannot be reached.
        """
        pool = docker.types.IPAMPool(subnet=spec.subnet, iprange=spec.ip_range)
        ipam = docker.types.IPAMConfig(pool_configs=[pool])
        try:
            self.client.networks.create(spec.name, driver=spec.driver, ipam=ipam)
        except RequestException as e:
            raise DockerException(f"Failed to create network {spec.name}: {e}") from e
        return NetworkInfo(name=spec.name, driver=spec.driver, subnets=[spec.subnet])

    def remove_network(self, name: str) -> bool:
        try:
            self.client.networks.get(name).remove()
        except NotFound:
            return True
        except DAEMON_ERRORS as e:
            logger.error(f"Failed to remove network {name}: {e}")
            return False
        return True
