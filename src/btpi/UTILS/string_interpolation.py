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
Substitution of ${VAR} references with values from the secret store.
"""
import re
from typing import Dict, List, Mapping

# ${VAR}, ${VAR:-default}, ${VAR:+value}
_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+)([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Resolves ${VAR} references in catalog strings (probe credentials,
    access URLs) against the deployment's key-value store.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str], strict: bool = True) -> str:
        """
        Interpolates variables in the template string.

        :param template: String containing ${VAR} placeholders.
        :param context: Values to substitute.
        :param strict: Raise on unset variables without a default; otherwise substitute "".
        :return: The interpolated string.
        :raises KeyError: If a variable is unset, has no default and strict is True.
        """
        def replace(match):
            var_name, modifier, alt_value = match.group(1), match.group(2), match.group(3)
            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if value is not None:
                return value
            if strict:
                raise KeyError(f"Variable {var_name} not found in context")
            return ''

        return _PATTERN.sub(replace, template)

    @staticmethod
    def interpolate_all(values: Mapping[str, str], context: Mapping[str, str]) -> Dict[str, str]:
        """Interpolates every value of a mapping leniently."""
        return {
            key: EnvironmentInterpolator.interpolate(value, context, strict=False)
            for key, value in values.items()
        }

    @staticmethod
    def references(template: str) -> List[str]:
        """Names of the variables a template refers to."""
        return [m.group(1) for m in _PATTERN.finditer(template)]
