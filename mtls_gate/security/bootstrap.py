"""
Certificate bootstrap: make sure the server identity and trust anchor exist
before the listener is built.
"""
import ipaddress
import logging
import os
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .models import BootstrapResult, CertificateBundle


logger = logging.getLogger(__name__)


class BootstrapError(Exception):
    """Raised when the certificate artefacts cannot be made available."""


def _write_private_file(path: Path, data: bytes):
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(data)


class OpenSSLCertificateGenerator:
    """Generate a self-signed key/certificate pair with the openssl binary."""

    def __init__(self, openssl_path: str = "openssl", key_size: int = 4096, timeout: int = 120):
        self.openssl_path = openssl_path
        self.key_size = key_size
        self.timeout = timeout

    def build_command(self, key_path: str, cert_path: str, common_name: str, validity_days: int) -> list:
        return [
            self.openssl_path, 'req', '-x509',
            '-newkey', f'rsa:{self.key_size}',
            '-nodes',
            '-keyout', key_path,
            '-out', cert_path,
            '-days', str(validity_days),
            '-subj', f'/CN={common_name}',
            '-addext', f'subjectAltName=DNS:{common_name}'
        ]

    def generate(self, key_path: str, cert_path: str, common_name: str, validity_days: int):
        command = self.build_command(key_path, cert_path, common_name, validity_days)
        logger.info(f"Running certificate generation: {' '.join(command[:3])} ... -subj /CN={common_name}")

        try:
            subprocess.run(command, capture_output=True, text=True, check=True, timeout=self.timeout)
        except FileNotFoundError:
            raise BootstrapError(f"Certificate generator not found: {self.openssl_path}")
        except subprocess.TimeoutExpired:
            raise BootstrapError(f"Certificate generation timed out after {self.timeout}s")
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or '').strip()
            raise BootstrapError(
                f"Certificate generation failed with exit code {e.returncode}: {stderr}"
            )

        if os.path.exists(key_path):
            os.chmod(key_path, 0o600)


class BuiltinCertificateGenerator:
    """Generate a self-signed key/certificate pair in-process."""

    def __init__(self, key_size: int = 2048):
        self.key_size = key_size

    def generate(self, key_path: str, cert_path: str, common_name: str, validity_days: int):
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)

        subject = issuer = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ])

        alt_names = [x509.DNSName(common_name)]
        if common_name == "localhost":
            alt_names.append(x509.IPAddress(ipaddress.ip_address("127.0.0.1")))
            alt_names.append(x509.IPAddress(ipaddress.ip_address("::1")))

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
            now + timedelta(days=validity_days)
        ).add_extension(
            x509.SubjectAlternativeName(alt_names),
            critical=False,
        ).add_extension(
            x509.BasicConstraints(ca=False, path_length=None),
            critical=True,
        ).sign(private_key, hashes.SHA256())

        _write_private_file(Path(key_path), private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        ))

        with open(cert_path, 'wb') as f:
            f.write(cert.public_bytes(serialization.Encoding.PEM))


def create_certificate_generator(config):
    """Pick the generator named by the configuration."""
    if config.cert_generator == "builtin":
        return BuiltinCertificateGenerator()
    return OpenSSLCertificateGenerator(openssl_path=config.openssl_path)


class CertificateBootstrap:
    """Load the server key, server certificate and CA certificate, generating
    a self-signed server identity when neither key nor certificate exists.

    The CA certificate is an externally managed trust root and is never
    generated. An existing key or certificate is never overwritten.
    """

    def __init__(self, config, generator=None):
        self.config = config
        self.generator = generator or create_certificate_generator(config)

    def ensure_certificates(self) -> BootstrapResult:
        """Make the three PEM artefacts available.

        Returns:
            BootstrapResult; ``success`` is False with an ``error_message``
            when startup must not continue.
        """
        try:
            self._check_trust_anchor()
            generated = self._ensure_server_identity()
            bundle = CertificateBundle(
                server_key=self._read_file(self.config.server_key_path, "Server private key"),
                server_cert=self._read_file(self.config.server_cert_path, "Server certificate"),
                ca_cert=self._read_file(self.config.ca_cert_path, "CA certificate")
            )
        except BootstrapError as e:
            logger.error(f"Certificate bootstrap failed: {e}")
            return BootstrapResult(success=False, bundle=None, error_message=str(e))

        logger.info("Certificate bootstrap complete")
        return BootstrapResult(success=True, bundle=bundle, generated=generated)

    def _check_trust_anchor(self):
        if not os.path.exists(self.config.ca_cert_path):
            raise BootstrapError(f"CA certificate not found: {self.config.ca_cert_path}")

    def _ensure_server_identity(self) -> bool:
        key_path = self.config.server_key_path
        cert_path = self.config.server_cert_path
        key_exists = os.path.exists(key_path)
        cert_exists = os.path.exists(cert_path)

        if key_exists and cert_exists:
            return False

        if key_exists or cert_exists:
            present, missing = (key_path, cert_path) if key_exists else (cert_path, key_path)
            raise BootstrapError(
                f"Found {present} but not {missing}; refusing to generate over a partial server identity"
            )

        logger.info(
            f"Server key and certificate missing, generating self-signed pair "
            f"for CN={self.config.server_common_name}"
        )
        try:
            for path in (key_path, cert_path):
                parent = os.path.dirname(path)
                if parent:
                    os.makedirs(parent, exist_ok=True)

            self.generator.generate(
                key_path,
                cert_path,
                self.config.server_common_name,
                self.config.cert_validity_days
            )
            if not (os.path.exists(key_path) and os.path.exists(cert_path)):
                raise BootstrapError("Certificate generation did not produce both key and certificate")
        except OSError as e:
            self._remove_partial_identity(key_path, cert_path)
            raise BootstrapError(f"Could not write generated certificate: {e}")
        except BootstrapError:
            self._remove_partial_identity(key_path, cert_path)
            raise

        logger.info(f"Generated server certificate: {cert_path}")
        return True

    def _remove_partial_identity(self, *paths):
        # Neither file existed before generation started
        for path in paths:
            try:
                os.remove(path)
                logger.warning(f"Removed partially generated file: {path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Could not remove partially generated file {path}: {e}")

    def _read_file(self, path: str, description: str) -> bytes:
        logger.debug(f"Loading {description} from: {path}")
        try:
            with open(path, 'rb') as f:
                content = f.read()
        except FileNotFoundError:
            raise BootstrapError(f"{description} not found: {path}")
        except OSError as e:
            raise BootstrapError(f"{description} unreadable: {path} ({e.strerror})")

        if not content.strip():
            raise BootstrapError(f"{description} is empty: {path}")

        logger.debug(f"Loaded {description} ({len(content)} bytes)")
        return content
