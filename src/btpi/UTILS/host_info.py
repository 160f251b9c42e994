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
Host inspection: primary address detection and resource checks.
"""
import ipaddress
import logging
import os
import socket
from dataclasses import dataclass, field
from typing import List

import psutil

from ..MODELS.deployment_config import HostRequirements

logger = logging.getLogger(__name__)

GIB = 1024 ** 3


@dataclass
class HostResources:
    """Snapshot of the host's capacity."""

    cpus: int
    memory_gb: float
    disk_free_gb: float
    problems: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def sufficient(self) -> bool:
        return not self.problems


def primary_address() -> str:
    """
    Returns the first non-loopback IPv4 address of an interface that is up.
    Falls back to 127.0.0.1.
    """
    stats = psutil.net_if_stats()
    for iface, addrs in psutil.net_if_addrs().items():
        if iface in stats and not stats[iface].isup:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            ip = ipaddress.ip_address(addr.address)
            if not ip.is_loopback and not ip.is_link_local:
                return addr.address
    return "127.0.0.1"


def check_host_resources(requirements: HostRequirements, path: str = "/") -> HostResources:
    """
    Compares the host against the deployment requirements.

    :param requirements: Minimums from the catalog.
    :param path: Filesystem whose free space is checked.
    :return: Resources with any problems (fatal) and warnings (advisory).
    """
    probe_path = path
    while not os.path.exists(probe_path):
        probe_path = os.path.dirname(probe_path) or "/"

    resources = HostResources(
        cpus=psutil.cpu_count() or 1,
        memory_gb=psutil.virtual_memory().total / GIB,
        disk_free_gb=psutil.disk_usage(probe_path).free / GIB,
    )

    if resources.disk_free_gb < requirements.min_disk_gb:
        resources.problems.append(
            f"Less than {requirements.min_disk_gb:g}GB disk space available "
            f"({resources.disk_free_gb:.1f}GB free on {probe_path})"
        )
    if resources.memory_gb < requirements.recommended_memory_gb:
        resources.warnings.append(
            f"System has less than {requirements.recommended_memory_gb:g}GB RAM. Performance may be impacted."
        )
    if resources.cpus < requirements.recommended_cpus:
        resources.warnings.append(
            f"System has less than {requirements.recommended_cpus} CPU cores. Performance may be impacted."
        )

    logger.info(
        "Host resources: %d CPU cores, %.1fGB memory, %.1fGB free disk",
        resources.cpus, resources.memory_gb, resources.disk_free_gb,
    )
    return resources
