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
Functional readiness probes. Each probe kind answers one question: does the
service respond the way a usable instance of it would?
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, Type

import httpx

from ..MODELS.deployment_session import Readiness
from ..MODELS.service_descriptor import ProbeKind, ReadinessProbe, ServiceDescriptor
from ..UTILS.port_finder import is_port_listening
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .container_runtime import ContainerRuntime

logger = logging.getLogger(__name__)

PortCheck = Callable[[int, str], bool]


@dataclass
class ReadinessResult:
    """Outcome of one classification."""

    readiness: Readiness
    detail: str = ""
    attempts: int = 1

    @property
    def usable(self) -> bool:
        return self.readiness.is_usable


@dataclass
class ProbeContext:
    """
    Collaborators a probe may use.

    :param variables: Secret store and layout values for ${VAR} references.
    :param transport: Optional httpx transport, replaces the network in tests.
    """
    runtime: ContainerRuntime
    variables: Mapping[str, str] = field(default_factory=dict)
    transport: Optional[httpx.BaseTransport] = None
    port_check: PortCheck = is_port_listening


class Probe:
    """
    Base class for a probe kind.
    """
    def __init__(self, descriptor: ServiceDescriptor, context: ProbeContext):
        self.descriptor = descriptor
        self.spec: ReadinessProbe = descriptor.readiness_probe
        self.context = context

    def run(self) -> ReadinessResult:
        raise NotImplementedError


class HttpProbe(Probe):
    """
    Shared plumbing for HTTP probes: URLs are tried in order, the first
    classification other than NOT_READY wins.
    """
    def run(self) -> ReadinessResult:
        try:
            auth = self._auth()
        except KeyError as e:
            return ReadinessResult(Readiness.NOT_READY, f"probe credentials unavailable: {e}")

        last = ReadinessResult(Readiness.NOT_READY, "no url answered")
        with self._client(auth) as client:
            for raw_url in self.spec.urls:
                url = EnvironmentInterpolator.interpolate(raw_url, self.context.variables, strict=False)
                try:
                    response = client.get(url)
                except httpx.InvalidURL as e:
                    logger.warning(f"{self.descriptor.name}: cannot probe {url}: {e}")
                    last = ReadinessResult(Readiness.NOT_READY, f"{url}: invalid url ({e})")
                    continue
                except httpx.HTTPError as e:
                    logger.debug(f"{self.descriptor.name}: {url} unreachable: {e}")
                    last = ReadinessResult(Readiness.NOT_READY, f"{url}: {type(e).__name__}")
                    continue
                result = self.classify(url, response)
                if result.usable:
                    return result
                last = result
        return last

    def classify(self, url: str, response: httpx.Response) -> ReadinessResult:
        raise NotImplementedError

    def _client(self, auth: Optional[httpx.BasicAuth]) -> httpx.Client:
        # verify is fixed per client, so every probe run gets its own
        kwargs: Dict = {
            "timeout": httpx.Timeout(self.spec.timeout),
            "verify": self.spec.verify_tls,
            "follow_redirects": True,
            "auth": auth,
        }
        if self.context.transport is not None:
            kwargs["transport"] = self.context.transport
        return httpx.Client(**kwargs)

    def _auth(self) -> Optional[httpx.BasicAuth]:
        """
        Resolves basic-auth credentials. A password that resolves to an empty
        string means the probe runs unauthenticated.
        """
        if self.spec.auth is None:
            return None
        username = EnvironmentInterpolator.interpolate(self.spec.auth.username, self.context.variables)
        password = EnvironmentInterpolator.interpolate(self.spec.auth.password, self.context.variables, strict=False)
        if not password:
            return None
        return httpx.BasicAuth(username, password)


class HttpStatusProbe(HttpProbe):
    def classify(self, url: str, response: httpx.Response) -> ReadinessResult:
        code = response.status_code
        if self.spec.any_response or code in self.spec.accepted_statuses:
            return ReadinessResult(Readiness.READY, f"{url} answered {code}")
        if code in self.spec.degraded_statuses:
            return ReadinessResult(Readiness.READY_DEGRADED, f"{url} answered {code}")
        return ReadinessResult(Readiness.NOT_READY, f"{url} answered {code}")


class HttpBodyProbe(HttpProbe):
    """
    Classifies a cluster health document: a status of green or yellow is
    ready, a known security error means reachable but not fully configured.
    """
    def classify(self, url: str, response: httpx.Response) -> ReadinessResult:
        body = response.text
        status = self._status(body)
        if status in self.spec.ready_statuses:
            return ReadinessResult(Readiness.READY, f"cluster status {status}")

        for marker in self.spec.degraded_markers:
            if marker in body:
                return ReadinessResult(Readiness.READY_DEGRADED, f"{url}: {marker}")
        if status is None and response.status_code in self.spec.degraded_statuses:
            return ReadinessResult(Readiness.READY_DEGRADED, f"{url} answered {response.status_code}")

        if status is not None:
            return ReadinessResult(Readiness.NOT_READY, f"cluster status {status}")
        return ReadinessResult(Readiness.NOT_READY, f"{url} answered {response.status_code} without a status")

    @staticmethod
    def _status(body: str) -> Optional[str]:
        try:
            document = json.loads(body)
        except ValueError:
            return None
        if isinstance(document, dict) and isinstance(document.get("status"), str):
            return document["status"]
        return None


class QueryExecProbe(Probe):
    """
    Runs a trivial query inside the service's container.
    """
    def run(self) -> ReadinessResult:
        if not self.descriptor.is_container:
            return ReadinessResult(Readiness.NOT_READY, "query probe needs a container unit")
        command = [
            EnvironmentInterpolator.interpolate(part, self.context.variables, strict=False)
            for part in self.spec.command
        ]
        exit_code, output = self.context.runtime.exec(self.descriptor.unit_name, command)
        if exit_code == 0:
            return ReadinessResult(Readiness.READY, "query succeeded")
        lines = output.strip().splitlines()
        return ReadinessResult(
            Readiness.NOT_READY,
            f"query exited with {exit_code}: {lines[-1] if lines else 'no output'}",
        )


class PortOnlyProbe(Probe):
    def run(self) -> ReadinessResult:
        closed = [
            str(port) for port in self.descriptor.required_ports
            if not self.context.port_check(port.port, port.protocol.value)
        ]
        if closed:
            return ReadinessResult(Readiness.NOT_READY, f"not listening: {', '.join(closed)}")
        return ReadinessResult(Readiness.READY, "all required ports listening")


PROBES: Dict[ProbeKind, Type[Probe]] = {
    ProbeKind.HTTP_STATUS: HttpStatusProbe,
    ProbeKind.HTTP_BODY_CLASSIFY: HttpBodyProbe,
    ProbeKind.QUERY_EXEC: QueryExecProbe,
    ProbeKind.PORT_ONLY: PortOnlyProbe,
}


def run_probe(descriptor: ServiceDescriptor, context: ProbeContext) -> ReadinessResult:
    """
    Runs the functional probe declared by a service.

    :param descriptor: The service to probe.
    :param context: Runtime, variables and transport for the probe.
    :return: Single-shot classification.
    """
    probe = PROBES[descriptor.readiness_probe.kind](descriptor, context)
    return probe.run()
