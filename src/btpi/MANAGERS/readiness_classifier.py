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
Readiness classification for services: a container liveness stage followed
by the service's functional probe, plus the bounded wait loop used after a
deployment.
"""
import logging
import threading
import time
from typing import Callable, Mapping, Optional

import httpx
from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from ..errors import DeploymentCancelledError
from ..MODELS.deployment_config import ReadinessPolicy
from ..MODELS.deployment_session import Readiness
from ..MODELS.service_descriptor import ServiceDescriptor
from ..RUNNERS.container_runtime import ContainerRuntime
from ..RUNNERS.readiness_probes import PortCheck, ProbeContext, ReadinessResult, run_probe
from ..UTILS.port_finder import is_port_listening

logger = logging.getLogger(__name__)


class ReadinessClassifier:
    """
    Decides whether a service is NOT_READY, READY or READY_DEGRADED.
    """
    def __init__(self,
                 runtime: ContainerRuntime,
                 policy: ReadinessPolicy,
                 variables: Optional[Callable[[], Mapping[str, str]]] = None,
                 transport: Optional[httpx.BaseTransport] = None,
                 port_check: PortCheck = is_port_listening,
                 sleep: Optional[Callable[[float], None]] = None,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initializes the classifier.

        :param runtime: Container runtime for the liveness stage and query probes.
        :param policy: Attempt bound and interval of the wait loop.
        :param variables: Returns the values probe credentials are resolved against.
        :param transport: httpx transport override for HTTP probes.
        :param port_check: Port listening check used by port-only probes.
        :param sleep: Sleep function for the wait loop.
        :param cancel_event: Set to abandon the wait loop.
        """
        self.runtime = runtime
        self.policy = policy
        self.variables = variables or dict
        self.transport = transport
        self.port_check = port_check
        self.cancel_event = cancel_event
        self._sleep = sleep

    def classify(self, descriptor: ServiceDescriptor) -> ReadinessResult:
        """
        Classifies a service once.

        :param descriptor: The service to classify.
        :return: The classification and a short explanation.
        """
        if descriptor.is_container:
            liveness = self._check_container(descriptor)
            if liveness is not None:
                return liveness

        context = ProbeContext(
            runtime=self.runtime,
            variables=self.variables(),
            transport=self.transport,
            port_check=self.port_check,
        )
        return run_probe(descriptor, context)

    def wait_until_ready(self, descriptor: ServiceDescriptor) -> ReadinessResult:
        """
        Polls the service until it is usable or the attempt bound is reached.

        :param descriptor: The service to wait for.
        :return: The last classification, NOT_READY if the bound was exhausted.
        :raises DeploymentCancelledError: If the cancel event is set while waiting.
        """
        name = descriptor.name
        total = self.policy.attempts
        attempts = 0

        def attempt() -> ReadinessResult:
            nonlocal attempts
            if self.cancelled:
                raise DeploymentCancelledError(name)
            attempts += 1
            result = self.classify(descriptor)
            result.attempts = attempts
            if result.usable:
                logger.info(f"{name} is {result.readiness.value} ({result.detail})")
            else:
                logger.info(f"Waiting for {name} to be ready... (attempt {attempts}/{total}): {result.detail}")
            return result

        def give_up(state: RetryCallState) -> ReadinessResult:
            return state.outcome.result()

        retryer = Retrying(
            stop=stop_after_attempt(total),
            wait=wait_fixed(self.policy.interval),
            retry=retry_if_result(lambda result: not result.usable),
            retry_error_callback=give_up,
            sleep=self.sleep,
        )
        return retryer(attempt)

    def sleep(self, seconds: float):
        if self._sleep is not None:
            self._sleep(seconds)
        elif self.cancel_event is not None:
            self.cancel_event.wait(seconds)
        else:
            time.sleep(seconds)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _check_container(self, descriptor: ServiceDescriptor) -> Optional[ReadinessResult]:
        """
        Liveness stage. Returns a NOT_READY result, or None to continue
        with the functional probe.
        """
        info = self.runtime.inspect(descriptor.unit_name)
        if info is None:
            return ReadinessResult(Readiness.NOT_READY, f"container {descriptor.unit_name} does not exist")
        if not info.running:
            return ReadinessResult(Readiness.NOT_READY, f"container {descriptor.unit_name} is {info.status}")
        if info.health == "starting":
            return ReadinessResult(Readiness.NOT_READY, "container health check is still starting")
        if info.health == "unhealthy":
            logger.debug(f"{descriptor.unit_name} reports unhealthy, running functional probe")
        return None
