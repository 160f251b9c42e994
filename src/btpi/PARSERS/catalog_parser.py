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
Parser for the service catalog YAML file.
"""
import logging
import yaml
from typing import Any, Dict, List, Optional
from pydantic import ValidationError

from ..errors import CatalogError
from ..MODELS.deployment_config import CatalogSettings, ServiceCatalog
from ..MODELS.service_descriptor import ServiceDescriptor

logger = logging.getLogger(__name__)


class CatalogParser:
    """
    Parser for services.yml catalog files.
    """
    def parse(self, catalog_path: str) -> ServiceCatalog:
        """
        Parses a catalog file from a path.

        :param catalog_path: Path to the catalog file.
        :return: Parsed catalog.
        :raises CatalogError: If the file is missing or invalid.
        """
        try:
            with open(catalog_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise CatalogError(f"Cannot read catalog {catalog_path}: {e}") from e
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> ServiceCatalog:
        """
        Parses a catalog from a string.

        :param content: YAML content of the catalog.
        :return: Parsed catalog with services in declaration order.
        """
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise CatalogError(f"Catalog is not valid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise CatalogError("Catalog root must be a mapping")

        settings = self._parse_settings(data)

        services = []
        for name, spec in (data.get('services') or {}).items():
            services.append(self._parse_service(name, spec or {}))

        self._check_references(services, settings)

        logger.debug("Loaded %d services from catalog", len(services))
        return ServiceCatalog(settings=settings, services=tuple(services))

    def _parse_settings(self, data: Dict[str, Any]) -> CatalogSettings:
        """
        Builds the deployment-wide settings block.

        :param data: The whole catalog document.
        :return: A CatalogSettings instance.
        """
        deployment = data.get('deployment') or {}

        # Networks and secrets accept either a mapping keyed by name or a list
        networks = self._named_entries(deployment.get('networks'))
        secrets = self._named_entries(deployment.get('secrets'))

        modes = {
            mode: self._to_list(names)
            for mode, names in (deployment.get('modes') or {}).items()
        }
        integrations = {
            name: self._to_list(requires)
            for name, requires in (deployment.get('integrations') or {}).items()
        }

        fields = dict(
            networks=networks,
            secrets=secrets,
            modes=modes,
            integrations=integrations,
            access_urls=deployment.get('access') or {},
        )
        for key in ('project', 'version'):
            if key in data:
                fields[key] = str(data[key])
        if 'domain' in deployment:
            fields['domain'] = deployment['domain']
        for key in ('readiness', 'certificate', 'host'):
            if deployment.get(key):
                fields[key] = deployment[key]

        try:
            return CatalogSettings(**fields)
        except ValidationError as e:
            raise CatalogError(f"Invalid deployment settings: {e}") from e

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDescriptor:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDescriptor instance.
        """
        depends_on = spec.get('depends_on', [])
        if isinstance(depends_on, dict):
            depends_on = list(depends_on.keys())

        readiness = spec.get('readiness') or {}
        if isinstance(readiness, str):
            readiness = {'kind': readiness}

        try:
            return ServiceDescriptor(
                name=name,
                role=spec.get('role', 'infra-tool'),
                unit=spec.get('unit', 'container'),
                container_name=spec.get('container_name'),
                required_ports=self._to_list(spec.get('ports', [])),
                dependencies=self._to_list(depends_on),
                readiness_probe=readiness,
                description=spec.get('description', ''),
            )
        except ValidationError as e:
            raise CatalogError(f"Invalid definition for service {name}: {e}") from e

    def _check_references(self, services: List[ServiceDescriptor], settings: CatalogSettings):
        """
        Rejects dependencies, mode presets and integration requirements naming
        services that do not exist.
        """
        known = {svc.name for svc in services}
        for svc in services:
            missing = [dep for dep in svc.dependencies if dep not in known]
            if missing:
                raise CatalogError(
                    f"Service {svc.name} depends on unknown service(s): {', '.join(missing)}"
                )
        for mode, names in settings.modes.items():
            missing = [n for n in names if n not in known]
            if missing:
                raise CatalogError(f"Mode '{mode}' lists unknown service(s): {', '.join(missing)}")
        for integration, names in settings.integrations.items():
            missing = [n for n in names if n not in known]
            if missing:
                raise CatalogError(
                    f"Integration '{integration}' requires unknown service(s): {', '.join(missing)}"
                )

    def _named_entries(self, value: Any) -> List[Dict[str, Any]]:
        """
        Normalizes ``{name: {...}}`` or ``[{name: ..., ...}]`` into a list of dicts.
        """
        if not value:
            return []
        if isinstance(value, dict):
            entries = []
            for name, body in value.items():
                entry = dict(body or {})
                entry['name'] = name
                entries.append(entry)
            return entries
        return [dict(item) if isinstance(item, dict) else {'name': item} for item in value]

    def _to_list(self, val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list.
        """
        if val is None:
            return []
        if isinstance(val, (str, int)):
            return [val]
        return list(val)
