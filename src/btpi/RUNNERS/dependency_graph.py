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
Dependency graph over service descriptors, used to determine deployment order.
"""
from typing import Dict, Iterable, List, Optional, Set

from ..errors import CatalogError, CyclicDependencyError
from ..MODELS.service_descriptor import ServiceDescriptor


class DependencyGraph:
    """
    Directed acyclic graph of services. Edges point from a service to each of
    its dependencies. Construction fails if the graph has a cycle.
    """
    def __init__(self, descriptors: Iterable[ServiceDescriptor]):
        """
        Builds and validates the graph.

        :param descriptors: Services in declaration order.
        :raises CatalogError: On duplicate names or unknown dependencies.
        :raises CyclicDependencyError: If a dependency cycle exists.
        """
        self._descriptors: Dict[str, ServiceDescriptor] = {}
        for svc in descriptors:
            if svc.name in self._descriptors:
                raise CatalogError(f"Service {svc.name} is declared more than once")
            self._descriptors[svc.name] = svc

        self._position = {name: index for index, name in enumerate(self._descriptors)}

        for svc in self._descriptors.values():
            for dep in svc.dependencies:
                if dep not in self._descriptors:
                    raise CatalogError(f"Service {svc.name} depends on unknown service {dep}")

        self._check_acyclic()

    @property
    def nodes(self) -> List[str]:
        """Service names in declaration order."""
        return list(self._descriptors)

    def descriptor(self, name: str) -> ServiceDescriptor:
        if name not in self._descriptors:
            raise CatalogError(f"Unknown service: {name}")
        return self._descriptors[name]

    def dependencies(self, name: str) -> List[str]:
        return list(self.descriptor(name).dependencies)

    def dependents(self, name: str) -> List[str]:
        """Services that directly depend on ``name``."""
        return [svc.name for svc in self._descriptors.values() if name in svc.dependencies]

    def closure(self, targets: Iterable[str]) -> List[str]:
        """
        Returns the targets plus all their transitive dependencies.

        :param targets: Requested service names.
        :return: The induced node set in declaration order.
        :raises CatalogError: If a target is not in the graph.
        """
        selected: Set[str] = set()
        stack = list(targets)
        while stack:
            name = stack.pop()
            if name in selected:
                continue
            selected.add(self.descriptor(name).name)
            stack.extend(self._descriptors[name].dependencies)
        return sorted(selected, key=self._position.__getitem__)

    def topological_order(self, targets: Optional[Iterable[str]] = None) -> List[str]:
        """
        Determines a deployment order where every service comes after its
        dependencies. Ties are broken by declaration order.

        :param targets: Services to order, defaults to the whole graph.
        :return: Service names in the order they should be deployed.
        """
        subset = self.closure(targets if targets is not None else self.nodes)
        remaining = list(subset)
        placed: Set[str] = set()
        ordered: List[str] = []

        while remaining:
            for name in remaining:
                if all(dep in placed for dep in self._descriptors[name].dependencies):
                    break
            else:
                raise CyclicDependencyError(remaining + remaining[:1])
            remaining.remove(name)
            placed.add(name)
            ordered.append(name)

        return ordered

    def _check_acyclic(self):
        """
        Depth-first search that reports the first cycle found.
        """
        visited: Set[str] = set()
        path: List[str] = []
        on_path: Set[str] = set()

        def visit(name):
            """
            Recursive walk along dependency edges.
            """
            if name in on_path:
                start = path.index(name)
                raise CyclicDependencyError(path[start:] + [name])
            if name in visited:
                return
            path.append(name)
            on_path.add(name)
            for dep in self._descriptors[name].dependencies:
                visit(dep)
            on_path.remove(name)
            path.pop()
            visited.add(name)

        for name in self._descriptors:
            visit(name)
