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
Post-deployment connectivity tests for the services that reached READY.
"""
import logging
from typing import Callable, Dict, Mapping

from ..MODELS.deployment_session import DeploymentSession, ServiceState
from ..MODELS.service_descriptor import ServiceDescriptor
from ..RUNNERS.dependency_graph import DependencyGraph
from .readiness_classifier import ReadinessClassifier

logger = logging.getLogger(__name__)

PASSED = "passed"


class ConnectivityChecker:
    """
    Re-checks every READY service once the whole stack is up: each
    required port must still be listening and one probe cycle must
    classify the service as usable.
    """
    def __init__(self,
                 classifier: ReadinessClassifier,
                 listening_snapshot: Callable[[ServiceDescriptor], Mapping[str, bool]]):
        self.classifier = classifier
        self.listening_snapshot = listening_snapshot

    def check(self, descriptor: ServiceDescriptor) -> str:
        closed = [port for port, listening in self.listening_snapshot(descriptor).items() if not listening]
        if closed:
            return f"failed: not listening on {', '.join(closed)}"
        result = self.classifier.classify(descriptor)
        if not result.usable:
            return f"failed: {result.detail}"
        return PASSED

    def run(self, graph: DependencyGraph, session: DeploymentSession) -> Dict[str, str]:
        """
        Tests the READY services of the session and records the results on it.

        :return: Service name to "passed" or "failed: ...".
        """
        logger.info("Running basic connectivity tests...")
        results = {}
        for name in session.target_services:
            if session.outcome(name).state != ServiceState.READY:
                continue
            results[name] = self.check(graph.descriptor(name))
            if results[name] == PASSED:
                logger.info(f"{name} connectivity test passed")
            else:
                logger.warning(f"{name} connectivity test {results[name]}")

        failed = [name for name, result in results.items() if result != PASSED]
        if failed:
            logger.warning(f"{len(failed)} connectivity tests failed")
        else:
            logger.info("All basic connectivity tests passed")
        session.connectivity = results
        return results
