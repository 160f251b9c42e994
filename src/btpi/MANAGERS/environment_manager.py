"""
Manager for building the environment handed to deploy procedures.
"""
import os
from typing import Dict, Mapping, Optional

from ..MODELS.deployment_config import DeploymentConfig
from .secret_store import SecretStore


class EnvironmentManager:
    """
    Merges the process environment, the secret store and the deployment layout
    into the variables every deploy procedure and probe sees.
    """
    def __init__(self, config: DeploymentConfig, store: SecretStore):
        """
        Initializes the environment manager.

        :param config: Deployment configuration providing the directory layout.
        :param store: Secret store holding generated credentials and settings.
        """
        self.config = config
        self.store = store

    def layout_variables(self) -> Dict[str, str]:
        """
        Returns the variables describing where the deployment lives.
        """
        return {
            "PROJECT_ROOT": str(self.config.root),
            "CONFIG_DIR": str(self.config.config_dir),
            "DATA_DIR": str(self.config.data_dir),
            "LOGS_DIR": str(self.config.logs_dir),
            "SERVICES_DIR": str(self.config.scripts_dir),
            "SERVER_IP": self.config.server_ip,
            "DOMAIN_NAME": self.config.settings.domain,
            "BTPI_VERSION": self.config.settings.version,
        }

    def get_merged_environment(self, explicit_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Merges environment variables from the current process, the secret store,
        the deployment layout and explicit definitions.

        :param explicit_env: Explicitly defined variables, these override everything.
        :return: A dictionary containing the merged environment variables.
        """
        merged_env = os.environ.copy()

        # 1. Stored secrets and settings
        merged_env.update(self.store.values())

        # 2. Layout of this run wins over whatever an older run recorded
        merged_env.update(self.layout_variables())

        # 3. Explicit environment variables override everything
        merged_env.update(explicit_env or {})

        return merged_env

    def probe_context(self) -> Dict[str, str]:
        """
        Values available to probe credentials and access URLs, without the process environment.
        """
        context = dict(self.store.values())
        context.update(self.layout_variables())
        return context
