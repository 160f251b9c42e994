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
Unit tests for port ownership lookups.
"""
import socket
from collections import namedtuple

import psutil
import pytest

from btpi.UTILS.port_finder import find_port_owner, is_port_listening, terminate_process

Addr = namedtuple("Addr", ["ip", "port"])
Connection = namedtuple("Connection", ["laddr", "status", "pid"])


class FakeProcess:
    def __init__(self, pid, name="java", cmdline=("java", "-jar", "app.jar"), exits=True, error=None):
        self.pid = pid
        self._name = name
        self._cmdline = list(cmdline)
        self.exits = exits
        self.error = error
        self.terminated = False
        self.killed = False

    def name(self):
        if self.error:
            raise self.error
        return self._name

    def cmdline(self):
        return self._cmdline

    def terminate(self):
        self.terminated = True

    def kill(self):
        self.killed = True

    def wait(self, timeout=None):
        if not self.exits and not self.killed:
            raise psutil.TimeoutExpired(timeout, self.pid)


@pytest.fixture
def listener():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    yield server.getsockname()[1]
    server.close()


@pytest.fixture
def connections(monkeypatch):
    table = []
    monkeypatch.setattr(psutil, "net_connections", lambda kind="inet": list(table))
    return table


class TestIsPortListening:
    """Tests for is_port_listening."""

    def test_tcp_listener(self, listener):
        """Test that a bound TCP listener is detected."""
        assert is_port_listening(listener)

    def test_closed_tcp_port(self):
        """Test that a port with no listener is reported closed."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            free_port = s.getsockname()[1]
        assert not is_port_listening(free_port, timeout=0.2)

    def test_udp_uses_socket_table(self, connections):
        """Test that UDP ports are looked up in the socket table."""
        connections.append(Connection(Addr("0.0.0.0", 1514), psutil.CONN_NONE, 4242))
        assert is_port_listening(1514, "udp")
        assert not is_port_listening(1515, "udp")


class TestFindPortOwner:
    """Tests for find_port_owner."""

    def test_owner_name_and_cmdline(self, connections, monkeypatch):
        """Test that the listening process is identified."""
        connections.append(Connection(Addr("0.0.0.0", 9200), psutil.CONN_LISTEN, 4242))
        monkeypatch.setattr(psutil, "Process", lambda pid: FakeProcess(pid))
        owner = find_port_owner(9200)
        assert owner.pid == 4242
        assert owner.name == "java"
        assert owner.cmdline == "java -jar app.jar"
        assert str(owner) == "java (pid 4242)"

    def test_established_connections_are_ignored(self, connections):
        """Test that only listening TCP sockets count."""
        connections.append(Connection(Addr("127.0.0.1", 9200), psutil.CONN_ESTABLISHED, 4242))
        assert find_port_owner(9200) is None

    def test_unknown_pid(self, connections):
        """Test a listener whose pid is hidden from this user."""
        connections.append(Connection(Addr("0.0.0.0", 80), psutil.CONN_LISTEN, None))
        owner = find_port_owner(80)
        assert owner.pid is None
        assert str(owner) == "unknown (pid unknown)"

    def test_process_exited_during_lookup(self, connections, monkeypatch):
        """Test that an owner which exits mid-lookup keeps its pid."""
        connections.append(Connection(Addr("0.0.0.0", 9200), psutil.CONN_LISTEN, 4242))
        monkeypatch.setattr(psutil, "Process", lambda pid: FakeProcess(pid, error=psutil.NoSuchProcess(pid)))
        owner = find_port_owner(9200)
        assert owner.pid == 4242
        assert owner.name == "unknown"

    def test_socket_table_access_denied(self, monkeypatch):
        """Test that an unreadable socket table means no owner."""
        def denied(kind="inet"):
            raise psutil.AccessDenied()
        monkeypatch.setattr(psutil, "net_connections", denied)
        assert find_port_owner(9200) is None


class TestTerminateProcess:
    """Tests for terminate_process."""

    def test_terminate(self, monkeypatch):
        """Test that a process exiting on SIGTERM is not killed."""
        proc = FakeProcess(4242)
        monkeypatch.setattr(psutil, "Process", lambda pid: proc)
        assert terminate_process(4242, timeout=0.1)
        assert proc.terminated
        assert not proc.killed

    def test_kill_after_timeout(self, monkeypatch):
        """Test that a process ignoring SIGTERM is killed."""
        proc = FakeProcess(4242, exits=False)
        monkeypatch.setattr(psutil, "Process", lambda pid: proc)
        assert terminate_process(4242, timeout=0.1)
        assert proc.killed

    def test_already_gone(self, monkeypatch):
        """Test that a process which no longer exists counts as terminated."""
        def gone(pid):
            raise psutil.NoSuchProcess(pid)
        monkeypatch.setattr(psutil, "Process", gone)
        assert terminate_process(4242)

    def test_access_denied(self, monkeypatch):
        """Test that a process owned by another user is not terminated."""
        def denied(pid):
            raise psutil.AccessDenied(pid)
        monkeypatch.setattr(psutil, "Process", denied)
        assert not terminate_process(1)
