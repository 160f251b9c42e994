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
Models for describing deployable services: ports, readiness probes and dependencies.
"""
from typing import List, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from enum import Enum

import httpx

from ..UTILS.string_interpolation import EnvironmentInterpolator


class ServiceRole(str, Enum):
    """
    Category of a service, used to group services in reports.
    """
    DATA_TIER = "data-tier"
    SECURITY_TOOL = "security-tool"
    FRONTEND = "frontend"
    INFRA_TOOL = "infra-tool"


class UnitKind(str, Enum):
    """
    How a service runs on the host.
    Native units have no container and skip container introspection.
    """
    CONTAINER = "container"
    NATIVE = "native"


class PortProtocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class PortSpec(BaseModel):
    """
    A host port a service needs, e.g. 9200/tcp.
    """
    model_config = ConfigDict(frozen=True)

    port: int = Field(ge=1, le=65535)
    protocol: PortProtocol = PortProtocol.TCP

    @classmethod
    def parse(cls, value: Union[int, str, dict, "PortSpec"]) -> "PortSpec":
        """
        Parses a port from the catalog notation.

        :param value: 9200, "9200", "1514/udp" or {"port": 1514, "protocol": "udp"}.
        :return: Parsed port specification.
        """
        if isinstance(value, PortSpec):
            return value
        if isinstance(value, dict):
            return cls(**value)
        if isinstance(value, int):
            return cls(port=value)
        text = str(value).strip()
        if "/" in text:
            port, protocol = text.split("/", 1)
            return cls(port=int(port), protocol=PortProtocol(protocol.lower()))
        return cls(port=int(text))

    def __str__(self) -> str:
        return f"{self.port}/{self.protocol.value}"


class ProbeKind(str, Enum):
    """
    The closed set of functional readiness probes.
    """
    HTTP_STATUS = "http-status"
    HTTP_BODY_CLASSIFY = "http-body-classify"
    QUERY_EXEC = "query-exec"
    PORT_ONLY = "port-only"


class ProbeAuth(BaseModel):
    """
    Basic-auth credentials for HTTP probes.
    Values may reference secret store entries as ${VAR}.
    """
    model_config = ConfigDict(frozen=True)

    username: str
    password: str = ""


def _check_url(url: str):
    """
    Rejects probe URLs httpx cannot parse. ${VAR} references are resolved
    at probe time, so each one is replaced by a placeholder first.
    """
    placeholders = {name: "0" for name in EnvironmentInterpolator.references(url)}
    candidate = EnvironmentInterpolator.interpolate(url, placeholders, strict=False)
    try:
        parsed = httpx.URL(candidate)
    except httpx.InvalidURL as e:
        raise ValueError(f"invalid readiness url {url!r}: {e}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValueError(f"readiness url {url!r} must be an absolute http(s) url")


class ReadinessProbe(BaseModel):
    """
    Functional readiness check for a service. Only the fields relevant
    to the chosen kind are used.
    """
    model_config = ConfigDict(frozen=True)

    kind: ProbeKind = ProbeKind.PORT_ONLY

    # HTTP probes, URLs are tried in order until one answers
    urls: Tuple[str, ...] = ()
    auth: Optional[ProbeAuth] = None
    verify_tls: bool = False
    accepted_statuses: Tuple[int, ...] = (200,)
    degraded_statuses: Tuple[int, ...] = (401, 403)
    any_response: bool = False

    # Body classification
    ready_statuses: Tuple[str, ...] = ("green", "yellow")
    degraded_markers: Tuple[str, ...] = ("security_exception", "Security not initialized")

    # Query execution inside the container
    command: Tuple[str, ...] = ()

    timeout: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def _check_kind_fields(self) -> "ReadinessProbe":
        if self.kind in (ProbeKind.HTTP_STATUS, ProbeKind.HTTP_BODY_CLASSIFY) and not self.urls:
            raise ValueError(f"{self.kind.value} probe requires at least one url")
        for url in self.urls:
            _check_url(url)
        if self.kind == ProbeKind.QUERY_EXEC and not self.command:
            raise ValueError("query-exec probe requires a command")
        return self


class ServiceDescriptor(BaseModel):
    """
    The immutable definition of a single deployable service.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    role: ServiceRole = ServiceRole.INFRA_TOOL
    unit: UnitKind = UnitKind.CONTAINER
    container_name: Optional[str] = None

    required_ports: Tuple[PortSpec, ...] = ()
    dependencies: Tuple[str, ...] = ()
    readiness_probe: ReadinessProbe = Field(default_factory=ReadinessProbe)

    description: str = ""

    @field_validator("required_ports", mode="before")
    @classmethod
    def _parse_ports(cls, value):
        ports: List[PortSpec] = []
        for item in value or ():
            port = PortSpec.parse(item)
            if port not in ports:
                ports.append(port)
        return tuple(ports)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _dedupe_dependencies(cls, value):
        if isinstance(value, str):
            value = [value]
        seen: List[str] = []
        for dep in value or ():
            if dep not in seen:
                seen.append(dep)
        return tuple(seen)

    @property
    def unit_name(self) -> str:
        """Name of the container backing this service."""
        return self.container_name or self.name

    @property
    def is_container(self) -> bool:
        return self.unit == UnitKind.CONTAINER
