"""
Security package for mTLS certificate management.
"""
from .models import (
    CertificateBundle,
    BootstrapResult,
    TransportPolicy,
    ConnectionAuthorization,
    HandshakeOutcome,
    CertificateInfo
)
from .security_service import SecurityService
from .bootstrap import CertificateBootstrap, BootstrapError
from .auth_middleware import MTLSAuthMiddleware, setup_mtls_authentication, require_client_certificate

__all__ = [
    'CertificateBundle',
    'BootstrapResult',
    'TransportPolicy',
    'ConnectionAuthorization',
    'HandshakeOutcome',
    'CertificateInfo',
    'SecurityService',
    'CertificateBootstrap',
    'BootstrapError',
    'MTLSAuthMiddleware',
    'setup_mtls_authentication',
    'require_client_certificate'
]
