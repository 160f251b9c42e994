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
Sequential walk of the dependency graph: each service is checked, deployed
if needed, and waited on before its dependents are considered.
"""
import logging
import threading
from typing import Iterable, Optional

from ..errors import (DeploymentCancelledError, DeployProcedureError, NodeDeploymentError,
                      PortConflictError, ReadinessTimeoutError)
from ..MODELS.deployment_session import DeploymentSession, ResolvedBy, ServiceDiagnostics, ServiceState
from ..MODELS.service_descriptor import ServiceDescriptor
from ..RUNNERS.dependency_graph import DependencyGraph
from ..RUNNERS.readiness_probes import ReadinessResult
from .port_conflict_resolver import PortConflictResolver, Resolution, ResolutionKind
from .readiness_classifier import ReadinessClassifier
from .rollback_manager import RollbackManager

logger = logging.getLogger(__name__)


class DeploymentScheduler:
    """
    Deploys services one at a time in topological order.
    A failed service only affects the services that depend on it.
    """
    def __init__(self,
                 classifier: ReadinessClassifier,
                 resolver: PortConflictResolver,
                 procedure,
                 rollback: RollbackManager,
                 force_ports: bool = False,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initializes the scheduler.

        :param classifier: Readiness classification and wait loop.
        :param resolver: Port conflict detection.
        :param procedure: Object with ``deploy(descriptor) -> bool`` that launches a service.
        :param rollback: Failure recording.
        :param force_ports: Free conflicting ports instead of failing the service.
        :param cancel_event: Set by the operator to stop the session.
        """
        self.classifier = classifier
        self.resolver = resolver
        self.procedure = procedure
        self.rollback = rollback
        self.force_ports = force_ports
        self.cancel_event = cancel_event

    @property
    def runtime(self):
        return self.classifier.runtime

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def schedule(self, graph: DependencyGraph, targets: Iterable[str], session: DeploymentSession) -> DeploymentSession:
        """
        Deploys the targets and their transitive dependencies.

        :param graph: Validated dependency graph.
        :param targets: Requested services.
        :param session: Session recording the outcomes.
        :return: The same session, with a terminal outcome for every scheduled service.
        """
        order = graph.topological_order(targets)
        session.target_services = order
        for name in order:
            session.outcome(name)
        logger.info(f"Deployment order: {' -> '.join(order)}")

        for index, name in enumerate(order, start=1):
            descriptor = graph.descriptor(name)
            if self.cancelled:
                session.transition(name, ServiceState.SKIPPED, last_error="deployment cancelled")
                continue

            blocked = [dep for dep in graph.dependencies(name) if not session.is_usable(dep)]
            if blocked:
                reason = f"dependency not ready: {', '.join(blocked)}"
                logger.warning(f"Skipping {name}, {reason}")
                session.transition(name, ServiceState.SKIPPED, last_error=reason)
                continue

            logger.info(f"[{index}/{len(order)}] {name}")
            self._deploy_node(descriptor, session)

            if session.outcome(name).state == ServiceState.FAILED:
                waiting = [other for other in graph.dependents(name) if other in order]
                if waiting:
                    logger.warning(f"Services depending on {name} will be skipped: {', '.join(waiting)}")

        return session

    def _deploy_node(self, descriptor: ServiceDescriptor, session: DeploymentSession):
        """
        Brings one service to a terminal state. Errors nobody anticipated
        fail this service only.
        """
        try:
            self._advance(descriptor, session)
        except Exception as e:
            logger.exception(f"Unexpected error while deploying {descriptor.name}")
            reason = f"unexpected {type(e).__name__}: {e}"
            if not session.outcome(descriptor.name).state.is_terminal:
                session.transition(
                    descriptor.name, ServiceState.FAILED,
                    last_error=reason,
                    diagnostics=ServiceDiagnostics(note=reason),
                )

    def _advance(self, descriptor: ServiceDescriptor, session: DeploymentSession):
        name = descriptor.name
        resolution = self.resolver.resolve(descriptor)

        if resolution.kind == ResolutionKind.SELF_RESOLVED:
            session.transition(
                name, ServiceState.READY,
                readiness=resolution.readiness.readiness,
                resolved_by=ResolvedBy.SELF_RESOLVED,
                attempts=0,
            )
            return

        if resolution.kind == ResolutionKind.CONFLICT:
            if not (self.force_ports and self.resolver.take_over(descriptor, resolution)):
                self.rollback.on_node_failure(session, descriptor, self._conflict_error(resolution))
                return
        else:
            quick = self._quick_check(descriptor)
            if quick is not None:
                logger.info(f"{name} is already running and {quick.readiness.value}, not redeploying")
                session.transition(
                    name, ServiceState.READY,
                    readiness=quick.readiness,
                    resolved_by=ResolvedBy.QUICK_CHECK,
                    attempts=0,
                )
                return

        session.transition(name, ServiceState.DEPLOYING)
        try:
            result = self._deploy_and_wait(descriptor, session)
        except ReadinessTimeoutError as e:
            self.rollback.on_node_failure(session, descriptor, e, attempts=e.attempts)
            return
        except NodeDeploymentError as e:
            self.rollback.on_node_failure(session, descriptor, e)
            return

        session.transition(
            name, ServiceState.READY,
            readiness=result.readiness,
            resolved_by=ResolvedBy.DEPLOYED,
            attempts=result.attempts,
        )

    def _quick_check(self, descriptor: ServiceDescriptor) -> Optional[ReadinessResult]:
        """
        Classifies a container that is already running. Returns the result if usable.
        """
        if not descriptor.is_container or not self.runtime.is_running(descriptor.unit_name):
            return None
        result = self.classifier.classify(descriptor)
        return result if result.usable else None

    def _deploy_and_wait(self, descriptor: ServiceDescriptor, session: DeploymentSession) -> ReadinessResult:
        name = descriptor.name
        existed = descriptor.is_container and self.runtime.exists(descriptor.unit_name)

        logger.info(f"Deploying {name}...")
        try:
            succeeded = self.procedure.deploy(descriptor)
        except NodeDeploymentError:
            raise
        except Exception as e:
            raise DeployProcedureError(name, f"Deploy procedure raised {type(e).__name__}: {e}") from e
        finally:
            if descriptor.is_container and not existed and self.runtime.exists(descriptor.unit_name):
                session.created_containers.append(descriptor.unit_name)

        if self.cancelled:
            raise DeploymentCancelledError(name)
        if not succeeded:
            raise DeployProcedureError(name, f"Deploy procedure for {name} reported failure")

        result = self.classifier.wait_until_ready(descriptor)
        if not result.usable:
            raise ReadinessTimeoutError(name, result.attempts, result.detail)
        return result

    @staticmethod
    def _conflict_error(resolution: Resolution) -> PortConflictError:
        if resolution.occupants:
            owner = resolution.occupants[0]
            return PortConflictError(resolution.service, owner.port, str(owner))
        port = int(resolution.busy_ports[0].split("/", 1)[0])
        return PortConflictError(resolution.service, port)
