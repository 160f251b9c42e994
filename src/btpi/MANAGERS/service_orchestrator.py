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
Orchestration of a deployment session: pre-flight, provisioning, scheduling
and reporting, with rollback on fatal errors.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional

import httpx

from ..errors import (CatalogError, FatalDeploymentError, InsufficientResourcesError,
                      PreflightCancelledError)
from ..MODELS.deployment_config import DeploymentConfig, DeploymentMode, HostRequirements
from ..MODELS.deployment_session import DeploymentSession
from ..MODELS.report import Report
from ..RUNNERS.container_runtime import ContainerRuntime
from ..RUNNERS.dependency_graph import DependencyGraph
from ..RUNNERS.deploy_runner import ScriptDeployProcedure, ScriptRunner
from ..UTILS.host_info import HostResources, check_host_resources
from ..UTILS.port_finder import find_port_owner, is_port_listening, terminate_process
from ..UTILS.session_lock import SessionLock
from .backup_manager import BackupManager
from .connectivity_checker import ConnectivityChecker
from .deployment_scheduler import DeploymentScheduler
from .environment_manager import EnvironmentManager
from .integration_manager import IntegrationManager
from .port_conflict_resolver import PortConflictResolver
from .readiness_classifier import ReadinessClassifier
from .resource_provisioner import ResourceProvisioner
from .rollback_manager import RollbackManager
from .secret_store import SecretStore
from .session_reporter import SessionReporter

logger = logging.getLogger(__name__)


class ServiceOrchestrator:
    """
    Runs deployment sessions against one deployment root.
    """
    def __init__(self,
                 config: DeploymentConfig,
                 runtime: Optional[ContainerRuntime] = None,
                 procedure=None,
                 integration_runner: Optional[ScriptRunner] = None,
                 transport: Optional[httpx.BaseTransport] = None,
                 port_check=is_port_listening,
                 owner_lookup=find_port_owner,
                 terminate=terminate_process,
                 sleep: Optional[Callable[[float], None]] = None,
                 host_check: Callable[[HostRequirements, str], HostResources] = check_host_resources,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initializes the orchestrator.

        :param config: Configuration for the session.
        :param runtime: Container runtime, defaults to the local Docker daemon.
        :param procedure: Service launch procedure, defaults to the per-service deploy scripts.
        :param integration_runner: Runs integration scripts, defaults to bash under the merged environment.
        :param transport: httpx transport override for readiness probes.
        :param port_check: Port listening check.
        :param owner_lookup: Finds the process holding a port.
        :param terminate: Stops a process occupying a port.
        :param sleep: Sleep function of the readiness wait loop.
        :param host_check: Host resource inspection.
        :param cancel_event: Set by the operator to cancel the session.
        """
        self.config = config
        self.runtime = runtime or ContainerRuntime()
        self.cancel_event = cancel_event or threading.Event()
        self.host_check = host_check
        self._procedure = procedure
        self._integration_runner = integration_runner

        self.store = SecretStore(config.secrets_file, project=config.settings.project)
        self.environment = EnvironmentManager(config, self.store)
        self.provisioner = ResourceProvisioner(config, self.runtime, store=self.store)
        self.classifier = ReadinessClassifier(
            self.runtime,
            config.readiness,
            variables=self.environment.probe_context,
            transport=transport,
            port_check=port_check,
            sleep=sleep,
            cancel_event=self.cancel_event,
        )
        self.resolver = PortConflictResolver(
            self.classifier, port_check=port_check, owner_lookup=owner_lookup, terminate=terminate,
        )
        self.rollback = RollbackManager(
            self.runtime,
            listening_snapshot=self.resolver.listening_snapshot,
            log_tail_lines=config.readiness.log_tail_lines,
        )
        self.backups = BackupManager(config)
        self.connectivity = ConnectivityChecker(self.classifier, self.resolver.listening_snapshot)
        self.reporter = SessionReporter(config, self.environment)

    def graph(self) -> DependencyGraph:
        return DependencyGraph(self.config.catalog.services)

    def targets(self) -> List[str]:
        """
        Services requested by the deployment mode.

        :raises CatalogError: If the mode selects nothing or names unknown services.
        """
        catalog = self.config.catalog
        mode = self.config.mode
        if mode == DeploymentMode.CUSTOM:
            selected = list(self.config.requested_services)
            if not selected:
                raise CatalogError("Custom mode requires at least one service")
        elif mode.value in catalog.settings.modes:
            selected = list(catalog.settings.modes[mode.value])
        elif mode == DeploymentMode.FULL:
            selected = catalog.names
        else:
            raise CatalogError(f"Mode '{mode.value}' is not defined in the catalog")

        unknown = [name for name in selected if catalog.get(name) is None]
        if unknown:
            raise CatalogError(f"Unknown service(s): {', '.join(unknown)}")
        return selected

    def plan(self) -> List[str]:
        """
        Returns the deployment order without side effects.
        """
        return self.graph().topological_order(self.targets())

    def up(self) -> Report:
        """
        Runs a full session and writes its report.

        :return: The session report.
        :raises SessionLockedError: If another session holds the deployment root.
        """
        session = DeploymentSession(mode=self.config.mode)
        host = None

        # The graph is validated before anything touches the host
        try:
            graph = self.graph()
            targets = self.targets()
            session.target_services = graph.topological_order(targets)
        except FatalDeploymentError as e:
            self.rollback.on_fatal_error(session, e)
            session.finish()
            return self.reporter.finalize(session)

        with SessionLock(self.config.lock_file):
            logger.info(
                f"Starting {self.config.settings.project} deployment {session.session_id} "
                f"(mode: {self.config.mode.value})"
            )
            try:
                host = self._preflight()
                if self.config.backup_existing:
                    backup = self.backups.backup()
                    session.backup = str(backup) if backup else None
                self.provisioner.provision_all(session)
                self._check_cancelled()
                self.scheduler().schedule(graph, targets, session)
                self._post_deployment(graph, session)
            except FatalDeploymentError as e:
                self.rollback.on_fatal_error(session, e)
            except Exception as e:
                logger.exception("Unexpected error during deployment")
                self.rollback.on_fatal_error(session, e)
            session.finish()
            report = self.reporter.finalize(session, host)

        logger.info(f"Deployment finished with status {report.status.value}")
        return report

    def scheduler(self) -> DeploymentScheduler:
        return DeploymentScheduler(
            self.classifier,
            self.resolver,
            self.procedure(),
            self.rollback,
            force_ports=self.config.force_ports,
            cancel_event=self.cancel_event,
        )

    def integrations(self) -> IntegrationManager:
        runner = self._integration_runner or ScriptRunner(
            self.config.logs_dir,
            env=self.environment.get_merged_environment(),
            timeout=self.config.deploy_timeout,
            working_dir=self.config.root,
        )
        return IntegrationManager(self.config.integrations_dir, self.config.settings.integrations, runner)

    def procedure(self):
        """
        The launch procedure, built after provisioning so it sees the generated secrets.
        """
        if self._procedure is not None:
            return self._procedure
        return ScriptDeployProcedure(
            self.config.scripts_dir,
            self.config.logs_dir,
            env=self.environment.get_merged_environment(),
            timeout=self.config.deploy_timeout,
            working_dir=self.config.root,
        )

    def down(self) -> Dict[str, bool]:
        """
        Stops and removes the selected services' containers in reverse dependency order.

        :return: Whether each container is gone afterwards.
        """
        results = {}
        for name in reversed(self.plan()):
            descriptor = self.config.catalog.get(name)
            if not descriptor.is_container:
                logger.info(f"Skipping {name}: not a container unit")
                continue
            logger.info(f"Stopping service: {name}...")
            results[name] = self.runtime.stop_and_remove(descriptor.unit_name)
        return results

    def ps(self) -> Dict[str, str]:
        """
        Returns the status of every catalog service.

        :return: Service names and their container status.
        """
        statuses = {}
        for descriptor in self.config.catalog.services:
            if not descriptor.is_container:
                statuses[descriptor.name] = "native"
                continue
            info = self.runtime.inspect(descriptor.unit_name)
            if info is None:
                statuses[descriptor.name] = "not found"
            elif info.health:
                statuses[descriptor.name] = f"{info.status} ({info.health})"
            else:
                statuses[descriptor.name] = info.status
        return statuses

    def _preflight(self) -> Optional[HostResources]:
        """
        Checks the container runtime and host capacity.

        :raises InsufficientResourcesError: If the runtime is down or the host is too small.
        """
        self._check_cancelled()
        if not self.runtime.ping():
            raise InsufficientResourcesError("Container runtime is not available")

        if self.config.skip_checks:
            logger.warning("Skipping system requirement checks")
            return None

        resources = self.host_check(self.config.settings.host, str(self.config.root))
        for warning in resources.warnings:
            logger.warning(warning)
        if not resources.sufficient:
            raise InsufficientResourcesError("; ".join(resources.problems))
        self._check_cancelled()
        return resources

    def _post_deployment(self, graph: DependencyGraph, session: DeploymentSession):
        """
        Integrations and connectivity tests, skipped once the session is cancelled.
        """
        if self.cancel_event.is_set():
            logger.warning("Deployment cancelled, skipping integrations and connectivity tests")
            return
        self.integrations().configure(session)
        if self.config.run_tests:
            self.connectivity.run(graph, session)

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise PreflightCancelledError("Deployment cancelled before any service was deployed")
