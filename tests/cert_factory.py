"""
Test certificate helpers: a throwaway CA and certificates it signs.
"""
import ipaddress
import os
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


def _generate_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _ca_key_usage():
    return x509.KeyUsage(
        digital_signature=True, content_commitment=False, key_encipherment=False,
        data_encipherment=False, key_agreement=False, key_cert_sign=True,
        crl_sign=True, encipher_only=False, decipher_only=False
    )


def _leaf_key_usage():
    return x509.KeyUsage(
        digital_signature=True, content_commitment=False, key_encipherment=True,
        data_encipherment=False, key_agreement=False, key_cert_sign=False,
        crl_sign=False, encipher_only=False, decipher_only=False
    )


def create_test_ca(common_name="Test CA"):
    """Create a test CA certificate and key."""
    private_key = _generate_key()

    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])

    now = datetime.now(timezone.utc)
    cert = x509.CertificateBuilder().subject_name(
        subject
    ).issuer_name(
        issuer
    ).public_key(
        private_key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - timedelta(minutes=5)
    ).not_valid_after(
        now + timedelta(days=365)
    ).add_extension(
        x509.BasicConstraints(ca=True, path_length=None),
        critical=True,
    ).add_extension(
        _ca_key_usage(),
        critical=True,
    ).add_extension(
        x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
        critical=False,
    ).sign(private_key, hashes.SHA256())

    return cert, private_key


def create_test_intermediate(ca_cert, ca_key, common_name="Test Intermediate CA"):
    """Create an intermediate CA certificate signed by the given CA."""
    private_key = _generate_key()

    now = datetime.now(timezone.utc)
    cert = x509.CertificateBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    ).issuer_name(
        ca_cert.subject
    ).public_key(
        private_key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - timedelta(minutes=5)
    ).not_valid_after(
        now + timedelta(days=180)
    ).add_extension(
        x509.BasicConstraints(ca=True, path_length=0),
        critical=True,
    ).add_extension(
        _ca_key_usage(),
        critical=True,
    ).add_extension(
        x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
        critical=False,
    ).add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
        critical=False,
    ).sign(ca_key, hashes.SHA256())

    return cert, private_key


def create_test_cert(ca_cert, ca_key, common_name, not_before=None, not_after=None, server=False):
    """Create a test certificate signed by the CA (self-signed when ca_cert is None)."""
    private_key = _generate_key()

    subject = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    issuer = ca_cert.subject if ca_cert is not None else subject
    signing_key = ca_key if ca_key is not None else private_key

    now = datetime.now(timezone.utc)
    builder = x509.CertificateBuilder().subject_name(
        subject
    ).issuer_name(
        issuer
    ).public_key(
        private_key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        not_before or now - timedelta(minutes=5)
    ).not_valid_after(
        not_after or now + timedelta(days=30)
    ).add_extension(
        x509.BasicConstraints(ca=False, path_length=None),
        critical=True,
    ).add_extension(
        _leaf_key_usage(),
        critical=True,
    ).add_extension(
        x509.ExtendedKeyUsage([
            ExtendedKeyUsageOID.SERVER_AUTH if server else ExtendedKeyUsageOID.CLIENT_AUTH
        ]),
        critical=False,
    ).add_extension(
        x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
        critical=False,
    ).add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(signing_key.public_key()),
        critical=False,
    )

    if server:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]),
            critical=False,
        )

    cert = builder.sign(signing_key, hashes.SHA256())
    return cert, private_key


def cert_pem(cert) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def key_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def write_file(directory, filename, data: bytes) -> str:
    path = os.path.join(directory, filename)
    with open(path, 'wb') as f:
        f.write(data)
    return path


class PKIFixture:
    """CA, server and client material written to a directory."""

    def __init__(self, directory):
        self.directory = directory

        self.ca_cert, self.ca_key = create_test_ca()
        self.server_cert, self.server_key = create_test_cert(
            self.ca_cert, self.ca_key, "localhost", server=True
        )
        self.client_cert, self.client_key = create_test_cert(self.ca_cert, self.ca_key, "TestClient")

        self.ca_cert_path = write_file(directory, 'ca_cert.pem', cert_pem(self.ca_cert))
        self.server_cert_path = write_file(directory, 'server_cert.pem', cert_pem(self.server_cert))
        self.server_key_path = write_file(directory, 'server_key.pem', key_pem(self.server_key))
        self.client_cert_path = write_file(directory, 'client_cert.pem', cert_pem(self.client_cert))
        self.client_key_path = write_file(directory, 'client_key.pem', key_pem(self.client_key))

    def write_client(self, name, cert, key, chain=()):
        """Write an extra client pair and return (cert_path, key_path).

        Certificates in ``chain`` follow the leaf in the certificate file.
        """
        data = cert_pem(cert) + b''.join(cert_pem(c) for c in chain)
        return (
            write_file(self.directory, f'{name}_cert.pem', data),
            write_file(self.directory, f'{name}_key.pem', key_pem(key))
        )
