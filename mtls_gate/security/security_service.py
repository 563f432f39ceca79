"""
Security service for mTLS certificate validation and transport policy.
"""
import os
import ssl
import logging
import tempfile
from typing import Dict, List, Optional, Sequence, Union
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID
from datetime import datetime, timezone

from .models import CertificateBundle, ConnectionAuthorization, CertificateInfo, TransportPolicy


TLS_VERSION_MAP = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}

MAX_CHAIN_DEPTH = 8

PEMInput = Union[str, bytes]


def name_to_dict(name: x509.Name) -> Dict[str, str]:
    """Map short RFC 4514 attribute names (CN, O, ...) to their values."""
    fields = {}
    for attribute in name:
        fields[attribute.rfc4514_attribute_name] = attribute.value
    return fields


def _as_bytes(pem: PEMInput) -> bytes:
    return pem.encode() if isinstance(pem, str) else pem


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.verify_directly_issued_by(issuer)
        return True
    except (ValueError, TypeError, InvalidSignature):
        return False


def _within_validity(cert: x509.Certificate, now: datetime) -> bool:
    return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc


class SecurityService:
    """Service for handling mTLS authentication and certificate management."""

    def __init__(self, config, certificate_bundle: Optional[CertificateBundle] = None):
        """Initialize the security service with configuration and bootstrapped certificates."""
        self.config = config
        self.logger = logging.getLogger(__name__)
        self._certificate_bundle = certificate_bundle
        self._trust_anchors: List[x509.Certificate] = []

        if certificate_bundle is not None:
            self._trust_anchors = x509.load_pem_x509_certificates(certificate_bundle.ca_cert)

    @property
    def trust_anchors(self) -> List[x509.Certificate]:
        """Every CA certificate in the configured bundle."""
        return list(self._trust_anchors)

    def validate_client_certificate(self, cert_pem: PEMInput,
                                    intermediates: Sequence[PEMInput] = (),
                                    transport_verified: bool = False) -> ConnectionAuthorization:
        """Validate a client certificate against the trust anchors.

        Args:
            cert_pem: The client's leaf certificate.
            intermediates: Further certificates the client presented, used to
                build a path from the leaf to a trust anchor.
            transport_verified: True when the TLS handshake of a context built
                by this service already verified the chain.
        """
        try:
            cert = x509.load_pem_x509_certificate(_as_bytes(cert_pem))
            chain = [x509.load_pem_x509_certificate(_as_bytes(pem)) for pem in intermediates]
        except ValueError as e:
            self.logger.warning(f"Client certificate could not be parsed: {e}")
            return ConnectionAuthorization.rejected(f"Malformed client certificate: {e}")

        cert_info = self._get_certificate_info(cert)

        if not cert_info.is_valid:
            return ConnectionAuthorization.rejected("Certificate is outside its validity window")

        if transport_verified:
            self.logger.debug("Client certificate chain verified during the handshake")
        elif not self._validate_against_ca(cert, chain):
            return ConnectionAuthorization.rejected("Certificate not signed by trusted CA")

        client_id = self._extract_client_id(cert)
        self.logger.debug(f"Client certificate chains to trust anchor: {client_id}")

        return ConnectionAuthorization(
            authorized=True,
            client_id=client_id,
            subject=name_to_dict(cert.subject),
            issuer=name_to_dict(cert.issuer),
            valid_from=cert_info.not_before,
            valid_to=cert_info.not_after,
            fingerprint=cert_info.fingerprint
        )

    def _get_certificate_info(self, cert: x509.Certificate) -> CertificateInfo:
        """Extract information from a certificate."""
        now = datetime.now(timezone.utc)

        not_before = cert.not_valid_before_utc
        not_after = cert.not_valid_after_utc

        return CertificateInfo(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            serial_number=str(cert.serial_number),
            not_before=not_before,
            not_after=not_after,
            is_valid=not_before <= now <= not_after,
            fingerprint=cert.fingerprint(hashes.SHA256()).hex()
        )

    def _validate_against_ca(self, cert: x509.Certificate,
                             intermediates: Sequence[x509.Certificate] = ()) -> bool:
        """Build a path from the certificate through the intermediates to a trust anchor."""
        if not self._trust_anchors:
            self.logger.error("CA validation failed: trust anchor not loaded")
            return False

        now = datetime.now(timezone.utc)
        candidates = [c for c in intermediates if _is_ca(c) and _within_validity(c, now)]
        current = cert

        for _ in range(MAX_CHAIN_DEPTH):
            if any(_issued_by(current, anchor) for anchor in self._trust_anchors):
                return True

            issuer = next((c for c in candidates if _issued_by(current, c)), None)
            if issuer is None:
                self.logger.debug(f"No trusted issuer found for {current.subject.rfc4514_string()}")
                return False

            candidates.remove(issuer)
            current = issuer

        return False

    def _extract_client_id(self, cert: x509.Certificate) -> str:
        """Extract client ID from certificate subject."""
        common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if common_names:
            return common_names[0].value

        # Fallback to serial number if CN not found
        return str(cert.serial_number)

    def setup_mtls_context(self, policy: Optional[TransportPolicy] = None) -> ssl.SSLContext:
        """Create SSL context configured for mTLS."""
        if not self._certificate_bundle:
            raise ValueError("Certificate bundle not loaded. Run the certificate bootstrap first.")

        policy = policy or self.config.transport_policy

        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)

        self._load_server_identity(context)
        context.load_verify_locations(cadata=self._certificate_bundle.ca_cert.decode('ascii'))

        # The client certificate is always requested
        if policy.reject_unauthorized:
            context.verify_mode = ssl.CERT_REQUIRED
        else:
            context.verify_mode = ssl.CERT_OPTIONAL

        context.minimum_version = TLS_VERSION_MAP[policy.minimum_version]
        context.maximum_version = TLS_VERSION_MAP[policy.maximum_version]
        context.set_ciphers(policy.ciphers)

        self.logger.info(
            f"SSL context configured for mTLS "
            f"({policy.minimum_version}-{policy.maximum_version}, "
            f"reject_unauthorized={policy.reject_unauthorized})"
        )
        return context

    def _load_server_identity(self, context: ssl.SSLContext):
        """Load the bootstrapped key and certificate into the context."""
        # ssl only reads key material from a file; mkstemp creates it 0600
        fd, path = tempfile.mkstemp(suffix='.pem')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(self._certificate_bundle.server_cert.rstrip(b'\n') + b'\n')
                f.write(self._certificate_bundle.server_key)
            context.load_cert_chain(certfile=path)
        finally:
            os.remove(path)
