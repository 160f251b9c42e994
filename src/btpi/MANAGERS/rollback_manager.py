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
Failure handling: per-service diagnostics and session-level rollback.
"""
import logging
from typing import Callable, Dict, Optional

from ..errors import NodeDeploymentError
from ..MODELS.deployment_session import DeploymentSession, ServiceDiagnostics, ServiceState
from ..MODELS.service_descriptor import ServiceDescriptor
from ..RUNNERS.container_runtime import ContainerRuntime

logger = logging.getLogger(__name__)


class RollbackManager:
    """
    Records per-service failures and undoes a session's side effects on fatal errors.

    Only containers and networks created by the current session are removed.
    Secrets and certificates are kept, they are reused on the next run.
    """
    def __init__(self,
                 runtime: ContainerRuntime,
                 listening_snapshot: Optional[Callable[[ServiceDescriptor], Dict[str, bool]]] = None,
                 log_tail_lines: int = 10):
        """
        :param runtime: Container runtime for snapshots and removal.
        :param listening_snapshot: Returns per-port listening state for a service.
        :param log_tail_lines: Number of container log lines kept in diagnostics.
        """
        self.runtime = runtime
        self.listening_snapshot = listening_snapshot
        self.log_tail_lines = log_tail_lines

    def diagnose(self, descriptor: ServiceDescriptor, note: str = "") -> ServiceDiagnostics:
        """
        Captures the state of a service at the time of failure.
        """
        diagnostics = ServiceDiagnostics(note=note)
        if descriptor.is_container:
            info = self.runtime.inspect(descriptor.unit_name)
            if info is not None:
                diagnostics.container_exists = True
                diagnostics.container_status = info.status
                diagnostics.health_status = info.health
                diagnostics.log_tail = self.runtime.tail_logs(descriptor.unit_name, self.log_tail_lines)
        if self.listening_snapshot is not None:
            diagnostics.ports_listening = self.listening_snapshot(descriptor)
        return diagnostics

    def on_node_failure(self,
                        session: DeploymentSession,
                        descriptor: ServiceDescriptor,
                        error: NodeDeploymentError,
                        attempts: int = 0):
        """
        Marks a service FAILED with diagnostics. Services that are already
        READY are left alone.
        """
        diagnostics = self.diagnose(descriptor, note=str(error))
        logger.error(f"{descriptor.name} failed: {error}")
        for line in diagnostics.log_tail:
            logger.debug(f"  {descriptor.unit_name}: {line}")
        return session.transition(
            descriptor.name,
            ServiceState.FAILED,
            last_error=str(error),
            attempts=attempts,
            diagnostics=diagnostics,
        )

    def on_fatal_error(self, session: DeploymentSession, error: Exception):
        """
        Aborts the session: removes the containers and networks it created,
        newest first, and records the fatal cause.
        """
        logger.error(f"Fatal error, rolling back: {error}")
        rolled_back = []

        for name in reversed(session.created_containers):
            if self.runtime.stop_and_remove(name):
                logger.info(f"Removed container {name}")
                rolled_back.append(f"container:{name}")
            else:
                logger.warning(f"Could not remove container {name}")

        for name in reversed(session.created_networks):
            if self.runtime.remove_network(name):
                logger.info(f"Removed network {name}")
                rolled_back.append(f"network:{name}")
            else:
                logger.warning(f"Could not remove network {name}")

        for name in session.pending():
            session.transition(name, ServiceState.SKIPPED, last_error="session aborted")

        session.fatal_error = f"{type(error).__name__}: {error}"
        session.rolled_back = rolled_back
        return rolled_back
