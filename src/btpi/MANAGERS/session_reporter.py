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
Final session report, written as JSON and as a text summary.
"""
import logging
from datetime import datetime
from typing import Optional

from jinja2 import Template

from ..MODELS.deployment_config import DeploymentConfig
from ..MODELS.deployment_session import DeploymentSession, ServiceState
from ..MODELS.report import Report, ServiceReport, SessionStatus
from ..UTILS.host_info import HostResources
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .environment_manager import EnvironmentManager

logger = logging.getLogger(__name__)

TEXT_TEMPLATE = """{{ report.project }} Deployment Report
========================================
Generated: {{ generated }}
Deployment ID: {{ report.session_id }}
Version: {{ report.version }}
Mode: {{ report.mode }}
Status: {{ report.status.value | upper }}
{% if report.host %}
System Information:
{% for key, value in report.host.items() %}- {{ key }}: {{ value }}
{% endfor %}{% endif %}
Deployment Information:
- Start Time: {{ report.started_at }}
- Completion Time: {{ report.finished_at or "-" }}
- Server IP: {{ report.server_ip }}
- Domain: {{ report.domain }}
{% if report.fatal_error %}
Deployment aborted: {{ report.fatal_error }}
{% if report.rolled_back %}Rolled back:
{% for item in report.rolled_back %}- {{ item }}
{% endfor %}{% else %}Nothing to roll back.
{% endif %}{% endif %}
Services:
{% for role, entries in report.by_role().items() %}[{{ role }}]
{% for svc in entries %}- {{ svc.name }}: {{ svc.state | upper }}{% if svc.readiness %} ({{ svc.readiness }}{% if svc.resolved_by %}, {{ svc.resolved_by }}{% endif %}){% endif %}
{% if svc.error %}    error: {{ svc.error }}
{% endif %}{% if svc.diagnostics %}{% for line in svc.diagnostics.log_tail %}    | {{ line }}
{% endfor %}{% endif %}{% endfor %}{% endfor %}
{% if report.integrations %}Integrations:
{% for name, result in report.integrations.items() %}- {{ name }}: {{ result }}
{% endfor %}
{% endif %}{% if report.connectivity %}Connectivity Tests:
{% for name, result in report.connectivity.items() %}- {{ name }}: {{ result }}
{% endfor %}
{% endif %}{% if access %}Access Information:
{% for svc in access %}- {{ svc.name }}: {{ svc.access_url }}
{% endfor %}{% endif %}
Default Credentials:
- See {{ report.resources.secrets }} for generated passwords
- IMPORTANT: Change all default credentials after first login

Configuration Files:
- Environment: {{ report.resources.secrets }}
- SSL Certificates: {{ report.resources.certificates }}

Data Storage:
- Application Data: {{ report.resources.data }}
- Logs: {{ report.resources.logs }}
{% if report.backup %}- Previous Deployment Backup: {{ report.backup }}
{% endif %}"""


class SessionReporter:
    """
    Builds the report for a finished session and persists it under the logs directory.
    The session itself is not modified.
    """
    def __init__(self, config: DeploymentConfig, environment: EnvironmentManager):
        self.config = config
        self.environment = environment
        self.template = Template(TEXT_TEMPLATE)

    def status(self, session: DeploymentSession) -> SessionStatus:
        if session.fatal_error:
            return SessionStatus.FAILED
        if session.is_complete and all(
            session.outcomes[name].state == ServiceState.READY for name in session.target_services
        ):
            return SessionStatus.SUCCESS
        return SessionStatus.PARTIAL

    def build(self, session: DeploymentSession, host: Optional[HostResources] = None) -> Report:
        """
        Builds the report without writing anything.

        :param session: The finished session.
        :param host: Host snapshot taken during pre-flight.
        """
        settings = self.config.settings
        access_urls = EnvironmentInterpolator.interpolate_all(
            settings.access_urls, self.environment.probe_context()
        )
        services = []
        for name in session.target_services:
            outcome = session.outcome(name) if name in session.outcomes else None
            descriptor = self.config.catalog.get(name)
            ready = outcome is not None and outcome.state == ServiceState.READY
            services.append(ServiceReport(
                name=name,
                role=descriptor.role.value if descriptor else "unknown",
                state=outcome.state.value if outcome else ServiceState.PENDING.value,
                readiness=outcome.readiness.value if outcome and outcome.readiness else None,
                resolved_by=outcome.resolved_by.value if outcome and outcome.resolved_by else None,
                attempts=outcome.attempts if outcome else 0,
                error=outcome.last_error if outcome else None,
                diagnostics=outcome.diagnostics if outcome else None,
                access_url=access_urls.get(name) if ready else None,
            ))

        host_info = {}
        if host is not None:
            host_info = {
                "CPU": f"{host.cpus} cores",
                "Memory": f"{host.memory_gb:.1f}GB",
                "Disk": f"{host.disk_free_gb:.1f}GB available",
            }

        return Report(
            project=settings.project,
            version=settings.version,
            session_id=session.session_id,
            mode=session.mode.value,
            started_at=session.started_at,
            finished_at=session.finished_at,
            server_ip=self.config.server_ip,
            domain=settings.domain,
            status=self.status(session),
            services=services,
            resources={
                "secrets": str(self.config.secrets_file),
                "certificates": str(self.config.certificates_dir),
                "logs": str(self.config.logs_dir),
                "data": str(self.config.data_dir),
            },
            host=host_info,
            fatal_error=session.fatal_error,
            rolled_back=list(session.rolled_back),
            backup=session.backup,
            integrations=dict(session.integrations),
            connectivity=dict(session.connectivity),
        )

    def finalize(self, session: DeploymentSession, host: Optional[HostResources] = None) -> Report:
        """
        Builds the report and writes the JSON and text versions.
        The text report's location is recorded under ``resources["report"]``.
        """
        report = self.build(session, host)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        logs_dir = self.config.logs_dir
        logs_dir.mkdir(parents=True, exist_ok=True)

        json_path = logs_dir / f"deployment_report_{stamp}.json"
        text_path = logs_dir / f"deployment_report_{stamp}.txt"
        report.resources["report"] = str(text_path)
        json_path.write_text(report.model_dump_json(indent=2))
        text_path.write_text(self.render(report))

        logger.info(f"Deployment report saved to: {text_path}")
        return report

    def render(self, report: Report) -> str:
        access = [svc for svc in report.services if svc.access_url]
        return self.template.render(
            report=report,
            access=access,
            generated=datetime.now().isoformat(timespec="seconds"),
        )
