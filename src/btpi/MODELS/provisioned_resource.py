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
Models for shared resources created by the provisioner.
"""
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field


class ResourceKind(str, Enum):
    SECRET_STORE = "secret-store"
    CERTIFICATE_AUTHORITY = "certificate-authority"
    CERTIFICATE = "certificate"
    NETWORK = "network"


class ProvisionedResource(BaseModel):
    """
    A secret store, certificate or network the session can rely on.

    ``reused`` is True when an existing valid resource was kept instead of
    generating a new one.
    """
    kind: ResourceKind
    identity: str
    generated_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )
    reused: bool = False
