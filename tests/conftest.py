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
Shared fixtures: an in-memory container runtime, a fake port table and a
launch procedure that brings services up inside them.
"""
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from btpi.MODELS.deployment_config import (CatalogSettings, DeploymentConfig, ReadinessPolicy,
                                           ServiceCatalog)
from btpi.MODELS.service_descriptor import ServiceDescriptor
from btpi.RUNNERS.container_runtime import ContainerInfo, NetworkInfo


class FakeRuntime:
    """Container runtime backed by dictionaries."""

    def __init__(self):
        self.containers: Dict[str, ContainerInfo] = {}
        self.networks: Dict[str, NetworkInfo] = {}
        self.exec_results: Dict[str, Tuple[int, str]] = {}
        self.logs: Dict[str, List[str]] = {}
        self.available = True
        self.removed: List[str] = []
        self.removed_networks: List[str] = []
        self.created_networks: List[str] = []

    def start(self, name: str, health: Optional[str] = None, status: str = "running"):
        self.containers[name] = ContainerInfo(name=name, status=status, health=health)

    def ping(self) -> bool:
        return self.available

    def inspect(self, name: str) -> Optional[ContainerInfo]:
        return self.containers.get(name)

    def exists(self, name: str) -> bool:
        return name in self.containers

    def is_running(self, name: str) -> bool:
        info = self.containers.get(name)
        return info is not None and info.running

    def health_status(self, name: str) -> Optional[str]:
        info = self.containers.get(name)
        return info.health if info else None

    def tail_logs(self, name: str, lines: int = 10) -> List[str]:
        return self.logs.get(name, [])[-lines:] if lines > 0 else []

    def exec(self, name: str, command: Sequence[str]) -> Tuple[int, str]:
        if name not in self.containers:
            return -1, f"container {name} not found"
        return self.exec_results.get(name, (0, ""))

    def stop_and_remove(self, name: str, timeout: int = 10) -> bool:
        self.containers.pop(name, None)
        self.removed.append(name)
        return True

    def get_network(self, name: str) -> Optional[NetworkInfo]:
        return self.networks.get(name)

    def create_network(self, spec) -> NetworkInfo:
        info = NetworkInfo(name=spec.name, driver=spec.driver, subnets=[spec.subnet])
        self.networks[spec.name] = info
        self.created_networks.append(spec.name)
        return info

    def remove_network(self, name: str) -> bool:
        self.networks.pop(name, None)
        self.removed_networks.append(name)
        return True


class FakePorts:
    """Listening port table, callable like is_port_listening."""

    def __init__(self):
        self.listening = set()

    def open(self, *ports: int):
        self.listening.update(ports)

    def close(self, *ports: int):
        self.listening.difference_update(ports)

    def __call__(self, port: int, protocol: str = "tcp") -> bool:
        return port in self.listening


class FakeProcedure:
    """
    Launch procedure that starts the service's container and opens its ports.
    Services listed in ``failing`` report failure, services in ``silent``
    start a container that never opens its ports.
    """
    def __init__(self, runtime: FakeRuntime, ports: FakePorts, failing=(), silent=()):
        self.runtime = runtime
        self.ports = ports
        self.failing = set(failing)
        self.silent = set(silent)
        self.calls: List[str] = []

    def deploy(self, descriptor: ServiceDescriptor) -> bool:
        self.calls.append(descriptor.name)
        if descriptor.name in self.failing:
            return False
        if descriptor.is_container:
            self.runtime.start(descriptor.unit_name)
        if descriptor.name not in self.silent:
            self.ports.open(*(p.port for p in descriptor.required_ports))
        return True


def make_service(name: str, depends_on=(), ports=(), **kwargs) -> ServiceDescriptor:
    """A container service with a port-only probe."""
    return ServiceDescriptor(name=name, dependencies=tuple(depends_on), required_ports=tuple(ports), **kwargs)


def make_config(root, services, **kwargs) -> DeploymentConfig:
    settings = kwargs.pop("settings", None) or CatalogSettings(
        readiness=ReadinessPolicy(attempts=3, interval=0, log_tail_lines=5),
    )
    catalog = ServiceCatalog(settings=settings, services=tuple(services))
    kwargs.setdefault("skip_checks", True)
    return DeploymentConfig(root=root, catalog=catalog, **kwargs)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def ports():
    return FakePorts()
