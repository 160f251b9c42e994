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
Unit tests for host inspection.
"""
import socket
from collections import namedtuple

import psutil
import pytest

from btpi.MODELS.deployment_config import HostRequirements
from btpi.UTILS.host_info import GIB, check_host_resources, primary_address

Address = namedtuple("Address", ["family", "address", "netmask", "broadcast", "ptp"])
Stats = namedtuple("Stats", ["isup", "duplex", "speed", "mtu"])
Memory = namedtuple("Memory", ["total", "available"])
Disk = namedtuple("Disk", ["total", "used", "free", "percent"])


def ipv4(address):
    return Address(socket.AF_INET, address, "255.255.255.0", None, None)


@pytest.fixture
def host(monkeypatch):
    capacity = {"cpus": 8, "memory": 32 * GIB, "disk": 500 * GIB}
    monkeypatch.setattr(psutil, "cpu_count", lambda logical=True: capacity["cpus"])
    monkeypatch.setattr(psutil, "virtual_memory", lambda: Memory(capacity["memory"], capacity["memory"]))
    monkeypatch.setattr(psutil, "disk_usage", lambda path: Disk(0, 0, capacity["disk"], 0.0))
    return capacity


def set_interfaces(monkeypatch, addrs, down=()):
    stats = {iface: Stats(iface not in down, 0, 0, 1500) for iface in addrs}
    monkeypatch.setattr(psutil, "net_if_addrs", lambda: addrs)
    monkeypatch.setattr(psutil, "net_if_stats", lambda: stats)


class TestCheckHostResources:
    """Tests for check_host_resources."""

    def test_sufficient_host(self, host, tmp_path):
        """Test a host that meets every requirement."""
        resources = check_host_resources(HostRequirements(), str(tmp_path))
        assert resources.sufficient
        assert resources.cpus == 8
        assert resources.memory_gb == pytest.approx(32.0)
        assert resources.warnings == []

    def test_low_disk_is_a_problem(self, host, tmp_path):
        """Test that disk below the minimum is fatal."""
        host["disk"] = 20 * GIB
        resources = check_host_resources(HostRequirements(min_disk_gb=100), str(tmp_path))
        assert not resources.sufficient
        assert resources.problems[0].startswith("Less than 100GB disk space available (20.0GB free")

    def test_low_memory_and_cpu_only_warn(self, host, tmp_path):
        """Test that memory and CPU below recommendations only warn."""
        host["cpus"] = 2
        host["memory"] = 8 * GIB
        resources = check_host_resources(HostRequirements(), str(tmp_path))
        assert resources.sufficient
        assert resources.warnings == [
            "System has less than 16GB RAM. Performance may be impacted.",
            "System has less than 4 CPU cores. Performance may be impacted.",
        ]

    def test_missing_path_uses_nearest_parent(self, host, tmp_path, monkeypatch):
        """Test that disk space is measured on the nearest existing directory."""
        seen = []
        monkeypatch.setattr(psutil, "disk_usage", lambda path: seen.append(path) or Disk(0, 0, 500 * GIB, 0.0))
        check_host_resources(HostRequirements(), str(tmp_path / "not" / "yet" / "created"))
        assert seen == [str(tmp_path)]


class TestPrimaryAddress:
    """Tests for primary_address."""

    def test_skips_loopback_and_link_local(self, monkeypatch):
        """Test that loopback and link-local addresses are skipped."""
        set_interfaces(monkeypatch, {
            "lo": [ipv4("127.0.0.1")],
            "eth0": [ipv4("169.254.10.2"), ipv4("192.168.1.20")],
        })
        assert primary_address() == "192.168.1.20"

    def test_skips_interfaces_that_are_down(self, monkeypatch):
        """Test that an interface that is down is ignored."""
        set_interfaces(monkeypatch, {
            "eth0": [ipv4("10.0.0.5")],
            "eth1": [ipv4("10.0.1.5")],
        }, down=("eth0",))
        assert primary_address() == "10.0.1.5"

    def test_ignores_ipv6(self, monkeypatch):
        """Test that only IPv4 addresses are considered."""
        set_interfaces(monkeypatch, {
            "eth0": [Address(socket.AF_INET6, "fe80::1", None, None, None), ipv4("10.0.0.5")],
        })
        assert primary_address() == "10.0.0.5"

    def test_falls_back_to_loopback(self, monkeypatch):
        """Test the fallback when no usable address exists."""
        set_interfaces(monkeypatch, {"lo": [ipv4("127.0.0.1")]})
        assert primary_address() == "127.0.0.1"
