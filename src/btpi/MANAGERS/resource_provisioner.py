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
Idempotent provisioning of the shared resources every service relies on:
the secret store, TLS certificates and isolated networks.
"""
import ipaddress
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Union

from docker.errors import DockerException

from ..errors import ProvisioningError
from ..MODELS.deployment_config import CertificateSpec, DeploymentConfig, NetworkSpec, SecretSlot
from ..MODELS.deployment_session import DeploymentSession
from ..MODELS.provisioned_resource import ProvisionedResource, ResourceKind
from ..RUNNERS.container_runtime import ContainerRuntime
from .certificate_manager import CertificateManager
from .secret_store import SecretStore

logger = logging.getLogger(__name__)

ResourceSpec = Union[NetworkSpec, CertificateSpec, Sequence[SecretSlot]]


class ResourceProvisioner:
    """
    Creates or reuses shared resources. Any failure is fatal for the session,
    and every operation is safe to retry.
    """
    def __init__(self,
                 config: DeploymentConfig,
                 runtime: ContainerRuntime,
                 store: Optional[SecretStore] = None,
                 certificates: Optional[CertificateManager] = None):
        """
        Initializes the provisioner.

        :param config: Deployment configuration.
        :param runtime: Container runtime used for networks.
        :param store: Secret store, defaults to the one under the deployment root.
        :param certificates: Certificate manager, defaults to one under the deployment root.
        """
        self.config = config
        self.runtime = runtime
        self.store = store or SecretStore(config.secrets_file, project=config.settings.project)
        self.certificates = certificates or CertificateManager(
            config.certificates_dir,
            config.settings.certificate,
            domain=config.settings.domain,
            server_ip=config.server_ip,
        )

    def ensure_layout(self):
        """
        Creates the deployment root directories.
        """
        directories = [self.config.config_dir, self.config.certificates_dir,
                       self.config.logs_dir, self.config.data_dir]
        directories.extend(self.config.data_dir / name for name in self.config.catalog.names)
        try:
            for directory in directories:
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProvisioningError("directory", str(e.filename or self.config.root), str(e)) from e

    def provision(self, resource_spec: ResourceSpec, session: Optional[DeploymentSession] = None) -> ProvisionedResource:
        """
        Provisions a single resource.

        :param resource_spec: A network, the certificate parameters, or the list of secret slots.
        :param session: Session that records networks it created, for rollback.
        :return: The created or reused resource.
        :raises ProvisioningError: If the resource cannot be created or validated.
        """
        if isinstance(resource_spec, NetworkSpec):
            return self.provision_network(resource_spec, session)
        if isinstance(resource_spec, CertificateSpec):
            return self.provision_certificates()[-1]
        return self.provision_secrets(resource_spec)

    def provision_all(self, session: DeploymentSession) -> List[ProvisionedResource]:
        """
        Runs every provisioning step in order: layout, secrets, certificates, networks.
        """
        self.ensure_layout()
        resources = [self.provision_secrets(self.config.settings.secrets, session.session_id)]
        resources.extend(self.provision_certificates())
        for network in self.config.settings.networks:
            resources.append(self.provision_network(network, session))
        return resources

    def deployment_settings(self, session_id: str = "") -> Dict[str, str]:
        """
        Non-secret values recorded in the store on first provisioning.
        """
        settings = self.config.settings
        values = {
            "BTPI_VERSION": settings.version,
            "DOMAIN_NAME": settings.domain,
            "SERVER_IP": self.config.server_ip,
        }
        if session_id:
            values["DEPLOYMENT_ID"] = session_id
            values["DEPLOYMENT_DATE"] = datetime.now(timezone.utc).isoformat(timespec="seconds")
        for network in settings.networks:
            if network.env_var:
                values[network.env_var] = network.name
        return values

    def provision_secrets(self, slots: Sequence[SecretSlot], session_id: str = "") -> ProvisionedResource:
        logger.info("Generating environment configuration...")
        try:
            return self.store.ensure(slots, self.deployment_settings(session_id))
        except OSError as e:
            raise ProvisioningError(ResourceKind.SECRET_STORE.value, str(self.store.path), str(e)) from e

    def provision_certificates(self) -> List[ProvisionedResource]:
        logger.info("Generating SSL certificates...")
        try:
            return self.certificates.ensure()
        except (OSError, ValueError, TypeError) as e:
            raise ProvisioningError(
                ResourceKind.CERTIFICATE.value, str(self.certificates.leaf_cert_path), str(e)
            ) from e

    def provision_network(self, spec: NetworkSpec, session: Optional[DeploymentSession] = None) -> ProvisionedResource:
        """
        Creates a network unless one with the same name exists.

        An existing network whose address range differs from the requested one
        fails provisioning when ``strict_network_subnets`` is set, and is reused
        with a warning otherwise.
        """
        try:
            existing = self.runtime.get_network(spec.name)
        except DockerException as e:
            raise ProvisioningError(ResourceKind.NETWORK.value, spec.name, str(e)) from e

        if existing is not None:
            if existing.subnets and not self._same_subnet(spec.subnet, existing.subnets):
                message = (
                    f"network exists with subnet(s) {', '.join(existing.subnets)} "
                    f"but {spec.subnet} was requested"
                )
                if self.config.strict_network_subnets:
                    raise ProvisioningError(ResourceKind.NETWORK.value, spec.name, message)
                logger.warning(f"Docker network '{spec.name}': {message}; reusing existing network")
            else:
                logger.info(f"Docker network '{spec.name}' already exists")
            return ProvisionedResource(kind=ResourceKind.NETWORK, identity=spec.name, reused=True)

        logger.info(f"Creating network: {spec.name} ({spec.subnet}) {spec.description}".rstrip())
        try:
            self.runtime.create_network(spec)
        except DockerException as e:
            raise ProvisioningError(ResourceKind.NETWORK.value, spec.name, str(e)) from e
        if session is not None:
            session.created_networks.append(spec.name)
        logger.info(f"Docker network '{spec.name}' created")
        return ProvisionedResource(kind=ResourceKind.NETWORK, identity=spec.name)

    def _same_subnet(self, requested: str, existing: List[str]) -> bool:
        wanted = ipaddress.ip_network(requested)
        for subnet in existing:
            try:
                if ipaddress.ip_network(subnet, strict=False) == wanted:
                    return True
            except ValueError:
                continue
        return False
