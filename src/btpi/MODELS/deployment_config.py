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
Models for catalog-wide settings and the per-session deployment configuration.
"""
import ipaddress
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .service_descriptor import ServiceDescriptor


class DeploymentMode(str, Enum):
    """
    Which part of the catalog a session deploys.
    """
    FULL = "full"
    SIMPLE = "simple"
    CUSTOM = "custom"


class SecretEncoding(str, Enum):
    BASE64 = "base64"
    HEX = "hex"


class SecretSlot(BaseModel):
    """
    A named secret to generate once and keep stable across runs.

    :param length: Number of random bytes before encoding.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    length: int = Field(default=32, ge=8)
    encoding: SecretEncoding = SecretEncoding.BASE64


class NetworkSpec(BaseModel):
    """
    An isolated container network with a fixed address range.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    subnet: str
    driver: str = "bridge"
    ip_range: Optional[str] = None
    env_var: Optional[str] = None
    description: str = ""

    @field_validator("subnet", "ip_range")
    @classmethod
    def _check_cidr(cls, value):
        if value is not None:
            ipaddress.ip_network(value, strict=True)
        return value


class CertificateSpec(BaseModel):
    """
    Parameters for the local certificate authority and the leaf certificate.
    """
    model_config = ConfigDict(frozen=True)

    organization: str = "BTPI-REACT"
    ca_common_name: str = "BTPI-REACT-CA"
    leaf_name: str = "btpi"
    key_size: int = Field(default=4096, ge=2048)
    validity_days: int = Field(default=365, ge=1)


class ReadinessPolicy(BaseModel):
    """
    Bounds for the readiness wait loop.
    """
    model_config = ConfigDict(frozen=True)

    attempts: int = Field(default=30, ge=1)
    interval: float = Field(default=10.0, ge=0)
    log_tail_lines: int = Field(default=10, ge=0)


class HostRequirements(BaseModel):
    """
    Minimum host resources checked before a session starts.
    Disk below the minimum is fatal; memory and CPU only warn.
    """
    model_config = ConfigDict(frozen=True)

    min_disk_gb: float = 100.0
    recommended_memory_gb: float = 16.0
    recommended_cpus: int = 4


class CatalogSettings(BaseModel):
    """
    Deployment-wide settings declared next to the services in the catalog file.
    """
    model_config = ConfigDict(frozen=True)

    project: str = "BTPI-REACT"
    version: str = "2.1.0"
    domain: str = "btpi.local"
    networks: Tuple[NetworkSpec, ...] = ()
    secrets: Tuple[SecretSlot, ...] = ()
    modes: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    # Integration script name -> services that must be READY before it runs
    integrations: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    readiness: ReadinessPolicy = Field(default_factory=ReadinessPolicy)
    certificate: CertificateSpec = Field(default_factory=CertificateSpec)
    host: HostRequirements = Field(default_factory=HostRequirements)
    access_urls: Dict[str, str] = Field(default_factory=dict)


class ServiceCatalog(BaseModel):
    """
    Complete description of the stack: settings plus services in declaration order.
    Equivalent to a parsed services.yml file.
    """
    model_config = ConfigDict(frozen=True)

    settings: CatalogSettings = Field(default_factory=CatalogSettings)
    services: Tuple[ServiceDescriptor, ...] = ()

    @property
    def names(self) -> List[str]:
        return [svc.name for svc in self.services]

    def get(self, name: str) -> Optional[ServiceDescriptor]:
        for svc in self.services:
            if svc.name == name:
                return svc
        return None


class DeploymentConfig(BaseModel):
    """
    Everything a session needs, built once at session start and handed
    to each component explicitly.
    """
    model_config = ConfigDict(frozen=True)

    root: Path
    catalog: ServiceCatalog
    server_ip: str = "127.0.0.1"
    mode: DeploymentMode = DeploymentMode.FULL
    requested_services: Tuple[str, ...] = ()

    services_dir: Optional[Path] = None
    deploy_timeout: float = 1800.0

    skip_checks: bool = False
    force_ports: bool = False
    strict_network_subnets: bool = True
    backup_existing: bool = True
    run_tests: bool = True

    @property
    def settings(self) -> CatalogSettings:
        return self.catalog.settings

    @property
    def readiness(self) -> ReadinessPolicy:
        return self.catalog.settings.readiness

    @property
    def config_dir(self) -> Path:
        return self.root / "config"

    @property
    def certificates_dir(self) -> Path:
        return self.config_dir / "certificates"

    @property
    def secrets_file(self) -> Path:
        return self.config_dir / ".env"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def data_dir(self) -> Path:
        return self.root / "data"

    @property
    def backups_dir(self) -> Path:
        return self.root / "backups"

    @property
    def lock_file(self) -> Path:
        return self.root / ".btpi.lock"

    @property
    def scripts_dir(self) -> Path:
        return self.services_dir or (self.root / "services")

    @property
    def integrations_dir(self) -> Path:
        return self.scripts_dir / "integrations"
