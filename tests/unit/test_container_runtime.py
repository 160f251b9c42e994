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
Unit tests for the Docker SDK wrapper, driven by a mocked client.
"""
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, NotFound
from requests.exceptions import ConnectionError as RequestsConnectionError

from btpi.MODELS.deployment_config import NetworkSpec
from btpi.RUNNERS.container_runtime import ContainerRuntime


def make_container(status="running", health=None, ports=None, attr_status=None):
    state = {"Status": attr_status or status}
    if health is not None:
        state["Health"] = {"Status": health, "FailingStreak": 0}
    container = MagicMock()
    container.status = status
    container.attrs = {"State": state, "NetworkSettings": {"Ports": ports or {}}}
    return container


def make_network(name, subnets=(), driver="bridge"):
    network = MagicMock()
    network.name = name
    network.attrs = {
        "Name": name,
        "Driver": driver,
        "IPAM": {"Driver": "default", "Config": [{"Subnet": subnet} for subnet in subnets]},
    }
    return network


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def runtime(client):
    return ContainerRuntime(client)


class TestInspect:
    """Tests for container introspection."""

    def test_container_without_health_check(self, client, runtime):
        """Test that a container with no health check reports health None."""
        client.containers.get.return_value = make_container()
        info = runtime.inspect("nginx-proxy")
        assert info.name == "nginx-proxy"
        assert info.running
        assert info.health is None
        assert runtime.health_status("nginx-proxy") is None

    def test_health_status_is_read_from_state(self, client, runtime):
        """Test that the health status comes from State.Health.Status."""
        client.containers.get.return_value = make_container(health="healthy")
        assert runtime.health_status("elasticsearch") == "healthy"

    def test_state_status_takes_precedence(self, client, runtime):
        """Test that State.Status is used over the cached container status."""
        client.containers.get.return_value = make_container(status="running", attr_status="exited")
        info = runtime.inspect("wazuh-manager")
        assert info.status == "exited"
        assert not runtime.is_running("wazuh-manager")

    def test_port_bindings(self, client, runtime):
        """Test that host port bindings are listed as host->container."""
        client.containers.get.return_value = make_container(ports={
            "9200/tcp": [{"HostIp": "0.0.0.0", "HostPort": "9200"}],
            "9300/tcp": None,
        })
        assert runtime.inspect("elasticsearch").ports == ["9200->9200/tcp"]

    def test_missing_container(self, client, runtime):
        """Test that a missing container yields None."""
        client.containers.get.side_effect = NotFound("No such container")
        assert runtime.inspect("ghost") is None
        assert not runtime.exists("ghost")

    def test_daemon_connection_error(self, client, runtime):
        """Test that a dropped daemon connection yields None instead of raising."""
        client.containers.get.side_effect = RequestsConnectionError("connection refused")
        assert runtime.inspect("elasticsearch") is None
        assert runtime.health_status("elasticsearch") is None


class TestDaemon:
    """Tests for daemon reachability and container commands."""

    def test_ping(self, client, runtime):
        """Test a reachable daemon."""
        client.ping.return_value = True
        assert runtime.ping()

    def test_ping_connection_error(self, client, runtime):
        """Test that a connection error means the daemon is unreachable."""
        client.ping.side_effect = RequestsConnectionError("connection refused")
        assert not runtime.ping()

    def test_ping_docker_exception(self, client, runtime):
        """Test that a DockerException means the daemon is unreachable."""
        client.ping.side_effect = DockerException("Error while fetching server API version")
        assert not runtime.ping()

    def test_exec(self, client, runtime):
        """Test that exec returns the exit code and decoded output."""
        container = make_container()
        container.exec_run.return_value = MagicMock(exit_code=0, output=b"1\n")
        client.containers.get.return_value = container
        assert runtime.exec("cassandra", ["cqlsh", "-e", "describe keyspaces"]) == (0, "1\n")
        container.exec_run.assert_called_once_with(["cqlsh", "-e", "describe keyspaces"])

    def test_exec_missing_container(self, client, runtime):
        """Test that exec in a missing container returns -1."""
        client.containers.get.side_effect = NotFound("No such container")
        exit_code, output = runtime.exec("cassandra", ["true"])
        assert exit_code == -1
        assert "not found" in output

    def test_exec_connection_error(self, client, runtime):
        """Test that exec returns -1 when the daemon is gone."""
        client.containers.get.side_effect = RequestsConnectionError("connection reset")
        exit_code, output = runtime.exec("cassandra", ["true"])
        assert exit_code == -1
        assert "connection reset" in output

    def test_tail_logs(self, client, runtime):
        """Test that logs are decoded and split into lines."""
        container = make_container()
        container.logs.return_value = b"started\nlistening on 9200\n"
        client.containers.get.return_value = container
        assert runtime.tail_logs("elasticsearch", 2) == ["started", "listening on 9200"]
        container.logs.assert_called_once_with(tail=2)

    def test_tail_logs_failure(self, client, runtime):
        """Test that unavailable logs yield an empty list."""
        client.containers.get.side_effect = RequestsConnectionError("connection refused")
        assert runtime.tail_logs("elasticsearch") == []
        assert runtime.tail_logs("elasticsearch", 0) == []


class TestStopAndRemove:
    """Tests for container removal."""

    def test_running_container_is_stopped_first(self, client, runtime):
        """Test that a running container is stopped then removed."""
        container = make_container()
        client.containers.get.return_value = container
        assert runtime.stop_and_remove("kasm", timeout=5)
        container.stop.assert_called_once_with(timeout=5)
        container.remove.assert_called_once_with()

    def test_stopped_container_is_only_removed(self, client, runtime):
        """Test that an exited container is removed without a stop."""
        container = make_container(status="exited")
        client.containers.get.return_value = container
        assert runtime.stop_and_remove("kasm")
        container.stop.assert_not_called()
        container.remove.assert_called_once_with()

    def test_missing_container_counts_as_removed(self, client, runtime):
        """Test that removing a missing container succeeds."""
        client.containers.get.side_effect = NotFound("No such container")
        assert runtime.stop_and_remove("kasm")

    def test_removal_failure(self, client, runtime):
        """Test that an API error during removal returns False."""
        container = make_container(status="exited")
        container.remove.side_effect = APIError("removal in progress")
        client.containers.get.return_value = container
        assert not runtime.stop_and_remove("kasm")


class TestNetworks:
    """Tests for network lookup and creation."""

    def test_subnets_from_ipam(self, client, runtime):
        """Test that subnets and driver are read from the network attributes."""
        client.networks.list.return_value = [make_network("btpi-network", ["172.20.0.0/16"])]
        info = runtime.get_network("btpi-network")
        assert info.name == "btpi-network"
        assert info.driver == "bridge"
        assert info.subnets == ["172.20.0.0/16"]
        client.networks.list.assert_called_once_with(names=["btpi-network"])

    def test_name_filter_is_exact(self, client, runtime):
        """Test that the daemon's prefix matches are ignored."""
        client.networks.list.return_value = [make_network("btpi-network-old", ["172.30.0.0/16"])]
        assert runtime.get_network("btpi-network") is None

    def test_network_without_ipam_config(self, client, runtime):
        """Test a network whose IPAM config is null."""
        network = make_network("btpi-network")
        network.attrs["IPAM"]["Config"] = None
        client.networks.list.return_value = [network]
        assert runtime.get_network("btpi-network").subnets == []

    def test_lookup_connection_error(self, client, runtime):
        """Test that a transport error during lookup raises DockerException."""
        client.networks.list.side_effect = RequestsConnectionError("connection refused")
        with pytest.raises(DockerException, match="Failed to list networks"):
            runtime.get_network("btpi-network")

    def test_create_network(self, client, runtime):
        """Test that the network is created with its fixed range."""
        spec = NetworkSpec(name="btpi-network", subnet="172.20.0.0/16", ip_range="172.20.240.0/20")
        info = runtime.create_network(spec)
        assert info.subnets == ["172.20.0.0/16"]
        args, kwargs = client.networks.create.call_args
        assert args == ("btpi-network",)
        assert kwargs["driver"] == "bridge"
        pool = kwargs["ipam"]["Config"][0]
        assert pool["Subnet"] == "172.20.0.0/16"
        assert pool["IPRange"] == "172.20.240.0/20"

    def test_create_network_rejected(self, client, runtime):
        """Test that a rejected network creation propagates."""
        client.networks.create.side_effect = APIError("Pool overlaps with other one on this address space")
        with pytest.raises(DockerException):
            runtime.create_network(NetworkSpec(name="btpi-network", subnet="172.20.0.0/16"))

    def test_remove_missing_network(self, client, runtime):
        """Test that removing a missing network succeeds."""
        client.networks.get.side_effect = NotFound("network not found")
        assert runtime.remove_network("btpi-network")

    def test_remove_network_connection_error(self, client, runtime):
        """Test that a transport error during removal returns False."""
        client.networks.get.side_effect = RequestsConnectionError("connection refused")
        assert not runtime.remove_network("btpi-network")
