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
Detection of host port conflicts before a service is deployed.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..MODELS.service_descriptor import ServiceDescriptor
from ..RUNNERS.readiness_probes import PortCheck, ReadinessResult
from ..UTILS.port_finder import PortOwner, find_port_owner, is_port_listening, terminate_process
from .readiness_classifier import ReadinessClassifier

logger = logging.getLogger(__name__)


class ResolutionKind(str, Enum):
    CLEAR = "clear"
    SELF_RESOLVED = "self-resolved"
    CONFLICT = "conflict"


@dataclass
class Resolution:
    """
    Result of checking a service's required ports.

    :param listening: Per-port listening state, keyed like "9200/tcp".
    :param occupants: Processes holding the ports, for conflicts only.
    """
    kind: ResolutionKind
    service: str
    listening: Dict[str, bool] = field(default_factory=dict)
    occupants: List[PortOwner] = field(default_factory=list)
    readiness: Optional[ReadinessResult] = None

    @property
    def busy_ports(self) -> List[str]:
        return [port for port, busy in self.listening.items() if busy]

    def describe(self) -> str:
        if self.kind != ResolutionKind.CONFLICT:
            return self.kind.value
        held = ", ".join(f"{o.port} held by {o}" for o in self.occupants)
        return f"port conflict on {', '.join(self.busy_ports)}" + (f": {held}" if held else "")


class PortConflictResolver:
    """
    Tells apart a port held by the service's own healthy instance from a
    port held by something else.
    """
    def __init__(self,
                 classifier: ReadinessClassifier,
                 port_check: PortCheck = is_port_listening,
                 owner_lookup: Callable[[int, str], Optional[PortOwner]] = find_port_owner,
                 terminate: Callable[[int], bool] = terminate_process):
        """
        Initializes the resolver.

        :param classifier: Used to check whether the listener is the service itself.
        :param port_check: Port listening check.
        :param owner_lookup: Finds the process holding a port.
        :param terminate: Stops a process by pid.
        """
        self.classifier = classifier
        self.port_check = port_check
        self.owner_lookup = owner_lookup
        self.terminate = terminate

    def listening_snapshot(self, descriptor: ServiceDescriptor) -> Dict[str, bool]:
        return {
            str(port): self.port_check(port.port, port.protocol.value)
            for port in descriptor.required_ports
        }

    def resolve(self, descriptor: ServiceDescriptor) -> Resolution:
        """
        Checks every required port of a service.

        :param descriptor: The service about to be deployed.
        :return: CLEAR if no port is taken, SELF_RESOLVED if the service is
                 already running and ready, CONFLICT otherwise.
        """
        listening = self.listening_snapshot(descriptor)
        if not any(listening.values()):
            return Resolution(ResolutionKind.CLEAR, descriptor.name, listening)

        readiness = self.classifier.classify(descriptor)
        if readiness.usable:
            logger.info(f"{descriptor.name} is already running and {readiness.readiness.value}, skipping deployment")
            return Resolution(ResolutionKind.SELF_RESOLVED, descriptor.name, listening, readiness=readiness)

        occupants = []
        for port in descriptor.required_ports:
            if not listening.get(str(port)):
                continue
            owner = self.owner_lookup(port.port, port.protocol.value)
            occupants.append(owner or PortOwner(port=port.port))
        resolution = Resolution(
            ResolutionKind.CONFLICT, descriptor.name, listening, occupants=occupants, readiness=readiness,
        )
        logger.warning(f"{descriptor.name}: {resolution.describe()}")
        return resolution

    def take_over(self, descriptor: ServiceDescriptor, resolution: Resolution) -> bool:
        """
        Frees the ports of a conflict: a stale instance of the service is
        removed and any other occupant is terminated.

        :return: True if every required port is free afterwards.
        """
        runtime = self.classifier.runtime
        if descriptor.is_container and runtime.exists(descriptor.unit_name):
            logger.warning(f"Removing stale container {descriptor.unit_name} to free its ports")
            runtime.stop_and_remove(descriptor.unit_name)

        for owner in resolution.occupants:
            if owner.pid is None:
                continue
            if not self.port_check(owner.port, self._protocol(descriptor, owner.port)):
                continue
            logger.warning(f"Terminating {owner} to free port {owner.port}")
            if not self.terminate(owner.pid):
                logger.error(f"Could not terminate {owner}")

        still_busy = [port for port, busy in self.listening_snapshot(descriptor).items() if busy]
        if still_busy:
            logger.error(f"{descriptor.name}: ports still in use after takeover: {', '.join(still_busy)}")
            return False
        return True

    @staticmethod
    def _protocol(descriptor: ServiceDescriptor, port: int) -> str:
        for spec in descriptor.required_ports:
            if spec.port == port:
                return spec.protocol.value
        return "tcp"
