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
Exception hierarchy for deployment sessions.

Fatal errors abort the whole session and trigger rollback. Node errors are
recorded against a single service and only block that service's dependents.
"""
from typing import List, Optional


class DeploymentError(Exception):
    """Base class for all orchestrator errors."""


class FatalDeploymentError(DeploymentError):
    """An error that aborts the session before or during pre-flight."""


class CatalogError(FatalDeploymentError):
    """The service catalog is malformed or references unknown services."""


class CyclicDependencyError(FatalDeploymentError):
    """
    Raised when the dependency graph contains a cycle.

    :param cycle: Service names forming the cycle, first name repeated at the end.
    """
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class ProvisioningError(FatalDeploymentError):
    """A shared resource (secret store, certificate, network) could not be provisioned."""

    def __init__(self, kind: str, identity: str, reason: str):
        self.kind = kind
        self.identity = identity
        self.reason = reason
        super().__init__(f"Failed to provision {kind} '{identity}': {reason}")


class InsufficientResourcesError(FatalDeploymentError):
    """The host does not meet the minimum requirements for a deployment."""


class SessionLockedError(FatalDeploymentError):
    """Another deployment session already holds the deployment root."""


class PreflightCancelledError(FatalDeploymentError):
    """The operator cancelled the session before any service was deployed."""


class NodeDeploymentError(DeploymentError):
    """
    An error local to a single service.

    :param service: Name of the service the error belongs to.
    """
    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(message)


class PortConflictError(NodeDeploymentError):
    """A required port is held by something other than the service's own healthy instance."""

    def __init__(self, service: str, port: int, occupant: Optional[str] = None):
        self.port = port
        self.occupant = occupant
        holder = occupant or "an unknown process"
        super().__init__(service, f"Port {port} required by {service} is in use by {holder}")


class ReadinessTimeoutError(NodeDeploymentError):
    """The service never classified as ready within its attempt budget."""

    def __init__(self, service: str, attempts: int, detail: str = ""):
        self.attempts = attempts
        self.detail = detail
        message = f"{service} did not become ready after {attempts} attempts"
        if detail:
            message += f" (last result: {detail})"
        super().__init__(service, message)


class DeployProcedureError(NodeDeploymentError):
    """The external launch procedure reported failure."""


class DeploymentCancelledError(NodeDeploymentError):
    """The operator cancelled the session while this service was being deployed."""

    def __init__(self, service: str):
        super().__init__(service, f"Deployment of {service} cancelled by operator")
