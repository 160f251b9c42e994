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
Models for a single deployment session and the per-service outcomes it accumulates.
"""
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, PrivateAttr

from .deployment_config import DeploymentMode


class ServiceState(str, Enum):
    """
    Lifecycle state of a service within one session.
    """
    PENDING = "pending"
    DEPLOYING = "deploying"
    READY = "ready"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ServiceState.READY, ServiceState.SKIPPED, ServiceState.FAILED)


class Readiness(str, Enum):
    """
    Functional classification of a running service.
    """
    NOT_READY = "not-ready"
    READY = "ready"
    READY_DEGRADED = "ready-degraded"

    @property
    def is_usable(self) -> bool:
        return self != Readiness.NOT_READY


class ResolvedBy(str, Enum):
    """How a service reached READY."""

    DEPLOYED = "deployed"
    SELF_RESOLVED = "self-resolved"
    QUICK_CHECK = "quick-check"


class ServiceDiagnostics(BaseModel):
    """
    Point-in-time snapshot captured when a service fails.
    """
    container_exists: bool = False
    container_status: Optional[str] = None
    health_status: Optional[str] = None
    log_tail: List[str] = []
    ports_listening: Dict[str, bool] = {}
    note: str = ""


class ServiceOutcome(BaseModel):
    """
    Result of considering one service during a session.
    """
    state: ServiceState = ServiceState.PENDING
    readiness: Optional[Readiness] = None
    resolved_by: Optional[ResolvedBy] = None
    attempts: int = 0
    last_error: Optional[str] = None
    diagnostics: Optional[ServiceDiagnostics] = None


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class DeploymentSession(BaseModel):
    """
    One end-to-end run of the orchestrator. Never reused across runs.
    """
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    started_at: str = Field(default_factory=_timestamp)
    finished_at: Optional[str] = None
    mode: DeploymentMode = DeploymentMode.FULL
    target_services: List[str] = []
    outcomes: Dict[str, ServiceOutcome] = {}

    created_networks: List[str] = []
    created_containers: List[str] = []

    fatal_error: Optional[str] = None
    rolled_back: List[str] = []

    # Post-deployment phases
    backup: Optional[str] = None
    integrations: Dict[str, str] = {}
    connectivity: Dict[str, str] = {}

    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    def outcome(self, name: str) -> ServiceOutcome:
        """
        Returns the outcome for a service, creating a PENDING one on first use.
        """
        with self._lock:
            if name not in self.outcomes:
                self.outcomes[name] = ServiceOutcome()
            return self.outcomes[name]

    def transition(self, name: str, state: ServiceState, **changes) -> ServiceOutcome:
        """
        Atomically moves a service to a new state.

        :param name: Service name.
        :param state: The new state.
        :param changes: Other outcome fields to update in the same step.
        :return: The updated outcome.
        :raises ValueError: If the service is already in a terminal state.
        """
        with self._lock:
            current = self.outcome(name)
            if current.state.is_terminal:
                raise ValueError(
                    f"Service {name} is already {current.state.value}, cannot move to {state.value}"
                )
            updated = current.model_copy(update=dict(changes, state=state))
            self.outcomes[name] = updated
            return updated

    def is_usable(self, name: str) -> bool:
        """True if the service reached READY (healthy or degraded)."""
        with self._lock:
            outcome = self.outcomes.get(name)
            return outcome is not None and outcome.state == ServiceState.READY

    def pending(self) -> List[str]:
        with self._lock:
            return [
                name for name in self.target_services
                if not self.outcome(name).state.is_terminal
            ]

    def finish(self) -> None:
        self.finished_at = _timestamp()

    @property
    def is_complete(self) -> bool:
        with self._lock:
            return all(
                name in self.outcomes and self.outcomes[name].state.is_terminal
                for name in self.target_services
            )
