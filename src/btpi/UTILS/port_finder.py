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
Utilities for checking whether host ports are listening and who holds them.
"""
import socket
from dataclasses import dataclass
from typing import Optional

import psutil

LOCALHOST = "127.0.0.1"


@dataclass
class PortOwner:
    """The process listening on a port."""

    port: int
    pid: Optional[int] = None
    name: str = "unknown"
    cmdline: str = ""

    def __str__(self) -> str:
        if self.pid is None:
            return f"{self.name} (pid unknown)"
        return f"{self.name} (pid {self.pid})"


def is_port_listening(port: int, protocol: str = "tcp", host: str = LOCALHOST, timeout: float = 1.0) -> bool:
    """
    Checks if something is listening on a port.
    TCP ports are checked by connecting, UDP ports through the socket table.
    """
    if protocol == "udp":
        return _find_connection(port, "udp") is not None
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(timeout)
        try:
            return s.connect_ex((host, port)) == 0
        except OSError:
            return False


def find_port_owner(port: int, protocol: str = "tcp") -> Optional[PortOwner]:
    """
    Finds the process bound to a port.

    :return: The owner, or None if nothing is bound to the port.
    """
    conn = _find_connection(port, protocol)
    if conn is None:
        return None
    owner = PortOwner(port=port, pid=conn.pid)
    if conn.pid is not None:
        try:
            proc = psutil.Process(conn.pid)
            owner.name = proc.name()
            owner.cmdline = " ".join(proc.cmdline())
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    return owner


def terminate_process(pid: int, timeout: float = 10.0) -> bool:
    """
    Stops a process with SIGTERM, followed by SIGKILL if it does not exit.

    :return: True if the process is gone.
    """
    try:
        proc = psutil.Process(pid)
        proc.terminate()
        try:
            proc.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=timeout)
    except psutil.NoSuchProcess:
        return True
    except (psutil.AccessDenied, psutil.TimeoutExpired):
        return False
    return True


def _find_connection(port: int, protocol: str):
    """
    Looks up a listening TCP socket or bound UDP socket on the given port.
    """
    try:
        connections = psutil.net_connections(kind=protocol)
    except psutil.AccessDenied:
        return None
    for conn in connections:
        if not conn.laddr or conn.laddr.port != port:
            continue
        if protocol == "tcp" and conn.status != psutil.CONN_LISTEN:
            continue
        return conn
    return None
