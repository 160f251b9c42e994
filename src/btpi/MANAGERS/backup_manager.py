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
Snapshot of an existing deployment taken before a new session changes it.
"""
import logging
import tarfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..MODELS.deployment_config import DeploymentConfig

logger = logging.getLogger(__name__)


class BackupManager:
    """
    Archives the data, config and logs directories of a deployment root
    into ``backups/btpi-backup-<timestamp>.tar.gz``.
    """
    SOURCES = ("data", "config", "logs")

    def __init__(self, config: DeploymentConfig):
        self.config = config

    def has_existing_deployment(self) -> bool:
        data_dir = self.config.data_dir
        return data_dir.is_dir() and any(data_dir.iterdir())

    def backup(self) -> Optional[Path]:
        """
        Archives the deployment if it holds any data.
        A failed backup is logged and never stops the session.

        :return: The archive path, or None if nothing was archived.
        """
        if not self.has_existing_deployment():
            logger.debug("No existing deployment data, skipping backup")
            return None

        logger.info("Backing up existing deployment...")
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        archive = self.config.backups_dir / f"btpi-backup-{stamp}.tar.gz"
        try:
            archive.parent.mkdir(parents=True, exist_ok=True)
            with tarfile.open(archive, "w:gz") as tar:
                for name in self.SOURCES:
                    source = self.config.root / name
                    if source.exists():
                        tar.add(str(source), arcname=name)
            # The archive holds the secret store
            archive.chmod(0o600)
        except (OSError, tarfile.TarError) as e:
            logger.warning(f"Backup of {self.config.root} failed: {e}")
            if archive.exists():
                archive.unlink()
            return None

        logger.info(f"Backup created: {archive}")
        return archive
