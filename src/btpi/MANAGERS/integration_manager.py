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
Integration scripts that wire services together once they are running.
"""
import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

from ..MODELS.deployment_session import DeploymentSession
from ..RUNNERS.deploy_runner import ScriptRunner

logger = logging.getLogger(__name__)


class IntegrationManager:
    """
    Runs every ``*.sh`` script of the integrations directory, in name order.

    A script whose name is declared in the catalog's ``integrations`` block
    only runs when all the services it requires are READY in the session.
    Undeclared scripts always run. A failing script never fails the session.
    """
    def __init__(self,
                 directory: Path,
                 requirements: Mapping[str, Sequence[str]],
                 runner: ScriptRunner):
        """
        :param directory: Where the integration scripts live.
        :param requirements: Integration name to the services it needs.
        :param runner: Executes the scripts.
        """
        self.directory = Path(directory)
        self.requirements = requirements
        self.runner = runner

    def discover(self) -> List[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(path for path in self.directory.glob("*.sh") if path.is_file())

    def configure(self, session: DeploymentSession) -> Dict[str, str]:
        """
        Runs the integrations and records their results on the session.

        :return: Integration name to "configured", "failed: ..." or "skipped: ...".
        """
        scripts = self.discover()
        if not scripts:
            logger.debug(f"No integration scripts in {self.directory}")
            return {}

        logger.info("Configuring service integrations...")
        results = {}
        for script in scripts:
            name = script.stem
            missing = [svc for svc in self.requirements.get(name, ()) if not session.is_usable(svc)]
            if missing:
                results[name] = f"skipped: requires {', '.join(missing)}"
                logger.info(f"Skipping {name} integration, {', '.join(missing)} not ready")
                continue
            results[name] = self._run(name, script)

        session.integrations = results
        return results

    def _run(self, name: str, script: Path) -> str:
        logger.info(f"Configuring {name} integration...")
        try:
            returncode = self.runner.run(script, f"integration-{name}", f"integration {name}")
        except subprocess.TimeoutExpired:
            logger.warning(f"{name} integration timed out")
            return f"failed: timed out after {self.runner.timeout:g}s"
        except OSError as e:
            logger.warning(f"{name} integration could not start: {e}")
            return f"failed: {e}"
        if returncode != 0:
            logger.warning(f"{name} integration failed")
            return f"failed: exit status {returncode}"
        logger.info(f"{name} integration configured")
        return "configured"
