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
Local certificate authority and TLS leaf certificate for the deployment domain.
"""
import ipaddress
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..MODELS.deployment_config import CertificateSpec
from ..MODELS.provisioned_resource import ProvisionedResource, ResourceKind
from ..UTILS.atomic_file import atomic_write

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CertificateManager:
    """
    Generates a self-signed CA once and a leaf certificate signed by it.
    Existing, non-expired certificates are never rotated.
    """
    def __init__(self,
                 directory: Path,
                 spec: CertificateSpec,
                 domain: str,
                 server_ip: str,
                 clock: Callable[[], datetime] = _utcnow):
        """
        :param directory: Where the key and certificate files live.
        :param spec: Key size, validity and subject names.
        :param domain: Local domain covered by the leaf (also as a wildcard).
        :param server_ip: Host primary address added as an IP SAN.
        :param clock: Source of the current time.
        """
        self.directory = Path(directory)
        self.spec = spec
        self.domain = domain
        self.server_ip = server_ip
        self.clock = clock

    @property
    def ca_key_path(self) -> Path:
        return self.directory / "ca.key"

    @property
    def ca_cert_path(self) -> Path:
        return self.directory / "ca.crt"

    @property
    def leaf_key_path(self) -> Path:
        return self.directory / f"{self.spec.leaf_name}.key"

    @property
    def leaf_cert_path(self) -> Path:
        return self.directory / f"{self.spec.leaf_name}.crt"

    def ensure(self) -> List[ProvisionedResource]:
        """
        Makes sure a valid leaf certificate exists, creating the CA if needed.

        :return: The CA and leaf as provisioned resources.
        """
        leaf = self._load_valid_certificate(self.leaf_cert_path)
        if leaf is not None and self.leaf_key_path.is_file():
            logger.info(f"SSL certificate {self.leaf_cert_path} already exists and is valid")
            resources = [ProvisionedResource(
                kind=ResourceKind.CERTIFICATE, identity=str(self.leaf_cert_path), reused=True,
            )]
            if self.ca_cert_path.is_file():
                resources.insert(0, ProvisionedResource(
                    kind=ResourceKind.CERTIFICATE_AUTHORITY, identity=str(self.ca_cert_path), reused=True,
                ))
            return resources

        ca_key, ca_cert, ca_reused = self._ensure_authority()
        self._issue_leaf(ca_key, ca_cert)
        logger.info(f"SSL certificate generated at {self.leaf_cert_path}")
        return [
            ProvisionedResource(
                kind=ResourceKind.CERTIFICATE_AUTHORITY, identity=str(self.ca_cert_path), reused=ca_reused,
            ),
            ProvisionedResource(kind=ResourceKind.CERTIFICATE, identity=str(self.leaf_cert_path)),
        ]

    def subject_alternative_names(self) -> List[x509.GeneralName]:
        names: List[x509.GeneralName] = [
            x509.DNSName(self.domain),
            x509.DNSName(f"*.{self.domain}"),
            x509.DNSName("localhost"),
            x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
        ]
        try:
            server = ipaddress.ip_address(self.server_ip)
        except ValueError:
            logger.warning(f"Server address {self.server_ip!r} is not an IP, leaving it out of the certificate")
            return names
        if str(server) != "127.0.0.1":
            names.append(x509.IPAddress(server))
        return names

    def _ensure_authority(self) -> Tuple[rsa.RSAPrivateKey, x509.Certificate, bool]:
        """
        Loads the CA if present and unexpired, otherwise creates a new one.
        """
        ca_cert = self._load_valid_certificate(self.ca_cert_path)
        if ca_cert is not None and self.ca_key_path.is_file():
            key = serialization.load_pem_private_key(self.ca_key_path.read_bytes(), password=None)
            logger.info(f"Reusing certificate authority {self.ca_cert_path}")
            return key, ca_cert, True

        logger.info("Generating certificate authority...")
        key = self._new_key()
        name = self._name(self.spec.ca_common_name)
        now = self.clock()
        ca_cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=self.spec.validity_days))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True, content_commitment=False, key_encipherment=False,
                    data_encipherment=False, key_agreement=False, key_cert_sign=True,
                    crl_sign=True, encipher_only=False, decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .sign(key, hashes.SHA256())
        )
        self._write_pair(self.ca_key_path, key, self.ca_cert_path, ca_cert)
        return key, ca_cert, False

    def _issue_leaf(self, ca_key: rsa.RSAPrivateKey, ca_cert: x509.Certificate):
        key = self._new_key()
        now = self.clock()
        not_after = min(now + timedelta(days=self.spec.validity_days), ca_cert.not_valid_after_utc)
        leaf = (
            x509.CertificateBuilder()
            .subject_name(self._name(self.domain))
            .issuer_name(ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True, content_commitment=False, key_encipherment=True,
                    data_encipherment=True, key_agreement=False, key_cert_sign=False,
                    crl_sign=False, encipher_only=False, decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
            .add_extension(x509.SubjectAlternativeName(self.subject_alternative_names()), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )
        self._write_pair(self.leaf_key_path, key, self.leaf_cert_path, leaf)

    def _load_valid_certificate(self, path: Path) -> Optional[x509.Certificate]:
        """
        Returns the certificate at ``path`` if it parses and has not expired.
        """
        if not path.is_file():
            return None
        try:
            cert = x509.load_pem_x509_certificate(path.read_bytes())
        except ValueError:
            logger.warning(f"Certificate {path} is unreadable, it will be regenerated")
            return None
        if cert.not_valid_after_utc <= self.clock():
            logger.info(f"Certificate {path} expired on {cert.not_valid_after_utc.isoformat()}")
            return None
        return cert

    def _new_key(self) -> rsa.RSAPrivateKey:
        return rsa.generate_private_key(public_exponent=65537, key_size=self.spec.key_size)

    def _name(self, common_name: str) -> x509.Name:
        return x509.Name([
            x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
            x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "State"),
            x509.NameAttribute(NameOID.LOCALITY_NAME, "City"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.spec.organization),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ])

    def _write_pair(self, key_path: Path, key: rsa.RSAPrivateKey, cert_path: Path, cert: x509.Certificate):
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        atomic_write(key_path, key_pem, mode=0o600)
        atomic_write(cert_path, cert.public_bytes(serialization.Encoding.PEM), mode=0o644)
