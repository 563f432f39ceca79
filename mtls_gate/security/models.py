"""
Security models for mTLS certificate management.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional
from datetime import datetime


@dataclass
class CertificateBundle:
    """PEM payloads needed for mTLS. The key is never logged."""
    server_key: bytes = field(repr=False)
    server_cert: bytes
    ca_cert: bytes


@dataclass
class BootstrapResult:
    """Outcome of the certificate bootstrap step."""
    success: bool
    bundle: Optional[CertificateBundle]
    generated: bool = False
    error_message: Optional[str] = None


@dataclass(frozen=True)
class TransportPolicy:
    """Protocol window and cipher allow-list for the listener."""
    minimum_version: str
    maximum_version: str
    ciphers: str
    reject_unauthorized: bool = True
    handshake_timeout_seconds: Optional[float] = None


@dataclass
class ConnectionAuthorization:
    """Authorization outcome for a single client connection or request."""
    authorized: bool
    client_id: Optional[str] = None
    subject: Optional[Dict[str, str]] = None
    issuer: Optional[Dict[str, str]] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    fingerprint: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def rejected(cls, error_message: str) -> 'ConnectionAuthorization':
        return cls(authorized=False, error_message=error_message)

    def to_client_info(self) -> Dict[str, object]:
        """Peer certificate fields echoed back to an authorized client."""
        return {
            'subject': self.subject,
            'issuer': self.issuer,
            'valid_from': self.valid_from.isoformat() if self.valid_from else None,
            'valid_to': self.valid_to.isoformat() if self.valid_to else None
        }


@dataclass
class HandshakeOutcome:
    """Transport-level event emitted once per accepted connection."""
    client_address: str
    success: bool
    protocol: Optional[str] = None
    cipher: Optional[str] = None
    peer_verified: bool = False
    error_message: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class CertificateInfo:
    """Information about a certificate."""
    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    is_valid: bool
    fingerprint: str
