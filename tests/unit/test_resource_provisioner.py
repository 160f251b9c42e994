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
Unit tests for resource provisioning.
"""
import pytest
from docker.errors import APIError

from btpi.errors import ProvisioningError
from btpi.MANAGERS.resource_provisioner import ResourceProvisioner
from btpi.MODELS.deployment_config import CatalogSettings, CertificateSpec, NetworkSpec, SecretSlot
from btpi.MODELS.deployment_session import DeploymentSession
from btpi.MODELS.provisioned_resource import ResourceKind
from btpi.RUNNERS.container_runtime import NetworkInfo
from conftest import make_config, make_service

CORE = NetworkSpec(name="btpi-core-network", subnet="172.24.0.0/16", env_var="BTPI_CORE_NETWORK")

SETTINGS = CatalogSettings(
    networks=(CORE,),
    secrets=(SecretSlot(name="ELASTIC_PASSWORD"),),
    certificate=CertificateSpec(key_size=2048),
)


@pytest.fixture
def provisioner(tmp_path, runtime):
    config = make_config(tmp_path, [make_service("elasticsearch")], settings=SETTINGS, server_ip="10.0.0.5")
    return ResourceProvisioner(config, runtime)


class TestNetworkProvisioning:
    """Tests for network creation and reuse."""

    def test_creates_missing_network(self, provisioner, runtime):
        """Test that a missing network is created and recorded on the session."""
        session = DeploymentSession()
        resource = provisioner.provision(CORE, session)

        assert resource.kind == ResourceKind.NETWORK
        assert resource.reused is False
        assert runtime.created_networks == ["btpi-core-network"]
        assert session.created_networks == ["btpi-core-network"]

    def test_existing_network_reused(self, provisioner, runtime):
        """Test that an existing network with the right subnet is reused."""
        runtime.networks[CORE.name] = NetworkInfo(name=CORE.name, subnets=["172.24.0.0/16"])
        session = DeploymentSession()

        resource = provisioner.provision(CORE, session)

        assert resource.reused is True
        assert runtime.created_networks == []
        assert session.created_networks == []

    def test_subnet_mismatch_fails_when_strict(self, provisioner, runtime):
        """Test that a subnet mismatch fails in strict mode."""
        runtime.networks[CORE.name] = NetworkInfo(name=CORE.name, subnets=["10.99.0.0/16"])
        with pytest.raises(ProvisioningError, match="10.99.0.0/16"):
            provisioner.provision(CORE)

    def test_subnet_mismatch_reused_when_lenient(self, tmp_path, runtime, caplog):
        """Test that a subnet mismatch only warns in lenient mode."""
        config = make_config(tmp_path, [], settings=SETTINGS, strict_network_subnets=False)
        runtime.networks[CORE.name] = NetworkInfo(name=CORE.name, subnets=["10.99.0.0/16"])

        resource = ResourceProvisioner(config, runtime).provision(CORE)

        assert resource.reused is True
        assert "reusing existing network" in caplog.text

    def test_daemon_error_is_provisioning_error(self, provisioner, runtime, monkeypatch):
        """Test that a daemon error becomes a ProvisioningError."""
        def refuse(spec):
            raise APIError("Pool overlaps with other one on this address space")
        monkeypatch.setattr(runtime, "create_network", refuse)

        with pytest.raises(ProvisioningError) as exc:
            provisioner.provision(CORE)
        assert exc.value.kind == "network"
        assert exc.value.identity == CORE.name


class TestProvisionAll:
    """Tests for the full provisioning pass."""

    def test_layout_secrets_certificates_networks(self, provisioner, tmp_path):
        """Test the full provisioning pass."""
        session = DeploymentSession()
        resources = provisioner.provision_all(session)

        kinds = [r.kind for r in resources]
        assert kinds == [
            ResourceKind.SECRET_STORE, ResourceKind.CERTIFICATE_AUTHORITY,
            ResourceKind.CERTIFICATE, ResourceKind.NETWORK,
        ]
        for sub in ("config", "config/certificates", "logs", "data/elasticsearch"):
            assert (tmp_path / sub).is_dir()

        values = provisioner.store.values()
        assert values["ELASTIC_PASSWORD"]
        assert values["SERVER_IP"] == "10.0.0.5"
        assert values["DOMAIN_NAME"] == "btpi.local"
        assert values["BTPI_CORE_NETWORK"] == "btpi-core-network"
        assert values["DEPLOYMENT_ID"] == session.session_id

    def test_second_run_reuses_everything(self, provisioner):
        """Test that a second pass changes nothing."""
        provisioner.provision_all(DeploymentSession())
        secret = provisioner.store.get("ELASTIC_PASSWORD")

        second = DeploymentSession()
        resources = provisioner.provision_all(second)

        assert all(r.reused for r in resources)
        assert provisioner.store.get("ELASTIC_PASSWORD") == secret
        assert second.created_networks == []

    def test_unwritable_root(self, tmp_path, runtime):
        """Test that an unusable root raises ProvisioningError."""
        blocker = tmp_path / "root"
        blocker.write_text("not a directory")
        config = make_config(blocker, [], settings=SETTINGS)

        with pytest.raises(ProvisioningError):
            ResourceProvisioner(config, runtime).ensure_layout()
