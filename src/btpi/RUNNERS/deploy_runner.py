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
Default service launch procedure and integration scripts: each script runs
with bash, with output appended to a log file under the logs directory.
"""
import logging
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from ..errors import DeployProcedureError
from ..MODELS.service_descriptor import ServiceDescriptor

logger = logging.getLogger(__name__)


class ScriptRunner:
    """
    Runs bash scripts under a fixed environment.
    """
    def __init__(self,
                 log_dir: Path,
                 env: Dict[str, str],
                 timeout: float = 1800.0,
                 working_dir: Optional[Path] = None):
        """
        :param log_dir: Directory where the log files are appended.
        :param env: Environment for the scripts (layout variables and secrets).
        :param timeout: Seconds before a script is considered hung.
        :param working_dir: Directory to run the scripts in.
        """
        self.log_dir = Path(log_dir)
        self.env = env
        self.timeout = timeout
        self.working_dir = working_dir

    def run(self, script: Path, log_name: str, label: str) -> int:
        """
        Runs a script and appends its output to ``<log_dir>/<log_name>.log``.

        :param script: Script to execute.
        :param log_name: Base name of the log file.
        :param label: Written in the log separator line.
        :return: The script's exit status.
        :raises subprocess.TimeoutExpired: If the script runs longer than the timeout.
        :raises OSError: If the script cannot be started.
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_path(log_name)
        command = ["bash", str(script)]

        logger.info(f"[{log_name}] Starting command: {' '.join(command)}")
        with open(log_path, "a") as log_handle:
            log_handle.write(f"\n=== {datetime.now().isoformat()} {label} ===\n")
            log_handle.flush()
            result = subprocess.run(
                command,
                env=self.env,
                cwd=str(self.working_dir) if self.working_dir else None,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        return result.returncode

    def log_path(self, log_name: str) -> Path:
        return self.log_dir / f"{log_name}.log"


class ScriptDeployProcedure(ScriptRunner):
    """
    Launches a service by executing ``<scripts_dir>/<service>/deploy.sh``.
    The orchestrator only sees success or failure.
    """
    def __init__(self,
                 scripts_dir: Path,
                 log_dir: Path,
                 env: Dict[str, str],
                 timeout: float = 1800.0,
                 working_dir: Optional[Path] = None):
        """
        Initializes the procedure.

        :param scripts_dir: Directory containing one sub-directory per service.
        :param log_dir: Directory where ``<service>.log`` files are appended.
        :param env: Environment for the scripts (layout variables and secrets).
        :param timeout: Seconds before a script is considered hung.
        :param working_dir: Directory to run the scripts in.
        """
        super().__init__(log_dir, env, timeout=timeout, working_dir=working_dir)
        self.scripts_dir = Path(scripts_dir)

    def script_for(self, service: ServiceDescriptor) -> Path:
        return self.scripts_dir / service.name / "deploy.sh"

    def deploy(self, service: ServiceDescriptor) -> bool:
        """
        Runs the deploy script for a service.

        :param service: Service to launch.
        :return: True if the script exited with status 0.
        :raises DeployProcedureError: If the script is missing, cannot start or hangs.
        """
        script = self.script_for(service)
        if not script.is_file():
            raise DeployProcedureError(service.name, f"Deployment script not found: {script}")

        log_path = self.log_path(service.name)
        try:
            returncode = self.run(script, service.name, f"deploy {service.name}")
        except subprocess.TimeoutExpired:
            raise DeployProcedureError(
                service.name, f"Deployment script timed out after {self.timeout:g}s (see {log_path})"
            )
        except OSError as e:
            raise DeployProcedureError(service.name, f"Failed to start deployment script: {e}") from e

        if returncode != 0:
            logger.error(f"[{service.name}] Deployment script exited with {returncode}, see {log_path}")
            return False
        logger.info(f"[{service.name}] Deployment script completed")
        return True
