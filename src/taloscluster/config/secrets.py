# Copyright 2025 Multikernel Technologies, Inc.
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
Cluster secrets: certificate authorities, keys and bootstrap tokens.
"""

import base64
import datetime
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .contract import VersionContract, contract_or_current

CA_VALIDITY = datetime.timedelta(days=3650)
ADMIN_CERT_VALIDITY = datetime.timedelta(days=365)

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class CertAndKey:
    """PEM encoded certificate and private key."""
    crt: bytes
    key: bytes

    def to_dict(self) -> dict:
        return {"crt": base64.b64encode(self.crt).decode(), "key": base64.b64encode(self.key).decode()}

    def crt_only(self) -> dict:
        return {"crt": base64.b64encode(self.crt).decode(), "key": ""}


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _key_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _sign_hash(key) -> Optional[hashes.HashAlgorithm]:
    # Ed25519 signatures carry their own digest
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return None
    return hashes.SHA256()


def _name(organization: str, common_name: str = "") -> x509.Name:
    attrs = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization)]
    if common_name:
        attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    return x509.Name(attrs)


def generate_ca(organization: str, key_type: str = "ecdsa",
                validity: datetime.timedelta = CA_VALIDITY) -> CertAndKey:
    """
    Generate a self-signed certificate authority.

    Args:
        organization: Subject organization
        key_type: ``ecdsa`` (P-256) or ``ed25519``

    Returns:
        CA certificate and key
    """
    if key_type == "ed25519":
        key = ed25519.Ed25519PrivateKey.generate()
    else:
        key = ec.generate_private_key(ec.SECP256R1())

    now = _now()
    subject = _name(organization)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + validity)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=False, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, _sign_hash(key))
    )

    return CertAndKey(crt=cert.public_bytes(serialization.Encoding.PEM), key=_key_pem(key))


def issue_client_cert(ca: CertAndKey, organization: str, common_name: str = "admin",
                      validity: datetime.timedelta = ADMIN_CERT_VALIDITY) -> CertAndKey:
    """Issue an Ed25519 client certificate signed by a CA."""
    ca_cert = x509.load_pem_x509_certificate(ca.crt)
    ca_key = serialization.load_pem_private_key(ca.key, password=None)

    key = ed25519.Ed25519PrivateKey.generate()
    now = _now()
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(organization, common_name))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + validity)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False)
        .sign(ca_key, _sign_hash(ca_key))
    )

    return CertAndKey(crt=cert.public_bytes(serialization.Encoding.PEM), key=_key_pem(key))


def generate_token(prefix_len: int = 6, suffix_len: int = 16) -> str:
    """Random ``[a-z0-9]{6}.[a-z0-9]{16}`` token."""
    def part(n):
        return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(n))
    return f"{part(prefix_len)}.{part(suffix_len)}"


def random_b64(size: int = 32) -> str:
    return base64.b64encode(secrets.token_bytes(size)).decode()


@dataclass
class SecretsBundle:
    """All secret material shared by the machines of a cluster."""
    cluster_id: str
    cluster_secret: str
    bootstrap_token: str
    trustd_token: str
    secretbox_encryption_secret: str
    os_ca: CertAndKey
    k8s_ca: CertAndKey
    k8s_aggregator_ca: CertAndKey
    k8s_service_account_key: bytes
    etcd_ca: CertAndKey
    admin: CertAndKey

    @classmethod
    def generate(cls, contract: Optional[VersionContract] = None) -> "SecretsBundle":
        """Generate fresh secrets for a new cluster."""
        contract = contract_or_current(contract)

        os_ca = generate_ca("talos", key_type="ed25519")

        return cls(
            cluster_id=random_b64(),
            cluster_secret=random_b64(),
            bootstrap_token=generate_token(),
            trustd_token=generate_token(),
            secretbox_encryption_secret=random_b64() if contract.secretbox_encryption_supported() else "",
            os_ca=os_ca,
            k8s_ca=generate_ca("kubernetes"),
            k8s_aggregator_ca=generate_ca("front-proxy"),
            k8s_service_account_key=_key_pem(ec.generate_private_key(ec.SECP256R1())),
            etcd_ca=generate_ca("etcd"),
            admin=issue_client_cert(os_ca, "os:admin"),
        )
