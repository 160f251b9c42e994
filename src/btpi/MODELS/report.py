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
Models for the final session report.
"""
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel

from .deployment_session import ServiceDiagnostics


class SessionStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ServiceReport(BaseModel):
    """Outcome of one service as presented to the operator."""

    name: str
    role: str
    state: str
    readiness: Optional[str] = None
    resolved_by: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    diagnostics: Optional[ServiceDiagnostics] = None
    access_url: Optional[str] = None


class Report(BaseModel):
    """
    Structured summary of a finished session.
    """
    project: str
    version: str
    session_id: str
    mode: str
    started_at: str
    finished_at: Optional[str] = None
    server_ip: str
    domain: str
    status: SessionStatus
    services: List[ServiceReport] = []
    resources: Dict[str, str] = {}
    host: Dict[str, str] = {}
    fatal_error: Optional[str] = None
    rolled_back: List[str] = []
    backup: Optional[str] = None
    integrations: Dict[str, str] = {}
    connectivity: Dict[str, str] = {}

    def by_role(self) -> Dict[str, List[ServiceReport]]:
        """Groups service entries by role, keeping order within each group."""
        groups: Dict[str, List[ServiceReport]] = {}
        for entry in self.services:
            groups.setdefault(entry.role, []).append(entry)
        return groups
