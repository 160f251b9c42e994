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
The deployment's key-value store: generated secrets plus deployment settings,
persisted as a single dotenv file with restrictive permissions.
"""
import base64
import logging
import secrets
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from dotenv import dotenv_values

from ..MODELS.deployment_config import SecretEncoding, SecretSlot
from ..MODELS.provisioned_resource import ProvisionedResource, ResourceKind
from ..UTILS.atomic_file import atomic_write

logger = logging.getLogger(__name__)


def generate_secret(slot: SecretSlot) -> str:
    """
    Generates a cryptographically random value for a slot.
    """
    raw = secrets.token_bytes(slot.length)
    if slot.encoding == SecretEncoding.HEX:
        return raw.hex()
    return base64.b64encode(raw).decode("ascii")


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class SecretStore:
    """
    Create-or-reuse store for secrets. Values that already exist are never
    regenerated, so repeated runs keep every credential stable.
    """
    def __init__(self, path: Path, project: str = "BTPI-REACT"):
        """
        :param path: Location of the dotenv file.
        :param project: Name written in the file header.
        """
        self.path = Path(path)
        self.project = project

    def exists(self) -> bool:
        return self.path.is_file()

    def values(self) -> Dict[str, str]:
        """
        Reads the store.

        :return: All entries; empty if the store does not exist yet.
        """
        if not self.exists():
            return {}
        return {k: v for k, v in dotenv_values(self.path, interpolate=False).items() if v is not None}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.values().get(key, default)

    def ensure(self,
               slots: Iterable[SecretSlot],
               settings: Optional[Mapping[str, str]] = None) -> ProvisionedResource:
        """
        Fills every missing slot and setting, leaving existing entries untouched.
        The full set is written in one atomic replace with mode 0600.

        :param slots: Secrets to generate when absent.
        :param settings: Non-secret values to record when absent.
        :return: The store as a provisioned resource; ``reused`` if nothing was added.
        """
        existing = self.values()
        added: Dict[str, str] = {}

        for slot in slots:
            if not existing.get(slot.name) and slot.name not in added:
                added[slot.name] = generate_secret(slot)
        for key, value in (settings or {}).items():
            if key not in existing and key not in added:
                added[key] = str(value)

        if not added and self.exists():
            # Tighten permissions of a store written by something else
            self.path.chmod(0o600)
            logger.info(f"Secret store {self.path} already complete, reusing")
            return ProvisionedResource(kind=ResourceKind.SECRET_STORE, identity=str(self.path), reused=True)

        merged = dict(existing)
        merged.update(added)
        self._write(merged)

        logger.info(
            f"Secret store {self.path} updated with {len(added)} new entries: {', '.join(sorted(added))}"
        )
        return ProvisionedResource(
            kind=ResourceKind.SECRET_STORE,
            identity=str(self.path),
            reused=False,
        )

    def _write(self, entries: Mapping[str, str]):
        lines = [
            f"# {self.project} Environment Configuration",
            f"# Updated: {datetime.now().isoformat(timespec='seconds')}",
            "# Generated values are kept across runs; do not edit while a deployment is running.",
            "",
        ]
        lines.extend(f"{key}={_quote(value)}" for key, value in entries.items())
        atomic_write(self.path, "\n".join(lines) + "\n", mode=0o600)
