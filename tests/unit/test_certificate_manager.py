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
Unit tests for certificate generation.
"""
import ipaddress
import stat
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509

from btpi.MANAGERS.certificate_manager import CertificateManager
from btpi.MODELS.deployment_config import CertificateSpec
from btpi.MODELS.provisioned_resource import ResourceKind

# Small keys keep the tests fast
SPEC = CertificateSpec(key_size=2048, validity_days=30)


@pytest.fixture
def manager(tmp_path):
    return CertificateManager(tmp_path / "certificates", SPEC, domain="btpi.local", server_ip="10.1.2.3")


def _load(path):
    return x509.load_pem_x509_certificate(path.read_bytes())


class TestCertificateManager:
    """Tests for CertificateManager."""

    def test_generates_ca_and_leaf(self, manager):
        """Test that a fresh directory gets a CA and a leaf certificate."""
        resources = manager.ensure()

        assert [r.kind for r in resources] == [ResourceKind.CERTIFICATE_AUTHORITY, ResourceKind.CERTIFICATE]
        assert not any(r.reused for r in resources)
        for path in (manager.ca_key_path, manager.ca_cert_path, manager.leaf_key_path, manager.leaf_cert_path):
            assert path.is_file()
        assert stat.S_IMODE(manager.leaf_key_path.stat().st_mode) == 0o600
        assert stat.S_IMODE(manager.ca_key_path.stat().st_mode) == 0o600
        assert stat.S_IMODE(manager.leaf_cert_path.stat().st_mode) == 0o644

    def test_leaf_signed_by_ca_with_sans(self, manager):
        """Test that the leaf is issued by the CA and carries the expected SANs."""
        manager.ensure()
        ca = _load(manager.ca_cert_path)
        leaf = _load(manager.leaf_cert_path)

        assert leaf.issuer == ca.subject
        leaf.verify_directly_issued_by(ca)
        sans = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert set(sans.get_values_for_type(x509.DNSName)) == {"btpi.local", "*.btpi.local", "localhost"}
        assert set(sans.get_values_for_type(x509.IPAddress)) == {
            ipaddress.ip_address("127.0.0.1"), ipaddress.ip_address("10.1.2.3"),
        }
        assert ca.extensions.get_extension_for_class(x509.BasicConstraints).value.ca is True

    def test_rerun_does_not_rotate(self, manager):
        """Test that existing certificates are reused."""
        manager.ensure()
        leaf_before = manager.leaf_cert_path.read_bytes()
        ca_before = manager.ca_cert_path.read_bytes()

        resources = manager.ensure()

        assert all(r.reused for r in resources)
        assert manager.leaf_cert_path.read_bytes() == leaf_before
        assert manager.ca_cert_path.read_bytes() == ca_before

    def test_missing_leaf_reuses_ca(self, manager):
        """Test that a missing leaf is reissued from the existing CA."""
        manager.ensure()
        ca_before = manager.ca_cert_path.read_bytes()
        manager.leaf_cert_path.unlink()

        resources = manager.ensure()

        assert resources[0].reused is True
        assert resources[1].reused is False
        assert manager.ca_cert_path.read_bytes() == ca_before
        _load(manager.leaf_cert_path).verify_directly_issued_by(_load(manager.ca_cert_path))

    def test_expired_certificates_are_replaced(self, tmp_path):
        """Test that expired certificates are regenerated."""
        directory = tmp_path / "certificates"
        CertificateManager(directory, SPEC, "btpi.local", "127.0.0.1").ensure()
        before = (directory / "btpi.crt").read_bytes()

        later = datetime.now(timezone.utc) + timedelta(days=60)
        resources = CertificateManager(directory, SPEC, "btpi.local", "127.0.0.1", clock=lambda: later).ensure()

        assert not any(r.reused for r in resources)
        assert (directory / "btpi.crt").read_bytes() != before

    def test_hostname_server_address_left_out(self, tmp_path):
        """Test that a server address that is not an IP is left out of the IP SANs."""
        manager = CertificateManager(tmp_path, SPEC, "btpi.local", "not-an-ip")
        ips = [n for n in manager.subject_alternative_names() if isinstance(n, x509.IPAddress)]
        assert len(ips) == 1
