"""
Configuration data models for the mTLS server.
"""
from dataclasses import dataclass

from ..security.models import TransportPolicy


TLS_VERSIONS = ["TLSv1", "TLSv1.1", "TLSv1.2", "TLSv1.3"]

DEFAULT_CIPHERS = (
    "ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:"
    "ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384"
)


@dataclass
class Config:
    """Main configuration class containing all server settings."""

    # Certificate settings
    server_key_path: str = "certs/server_key.pem"
    server_cert_path: str = "certs/server_cert.pem"
    ca_cert_path: str = "certs/ca_cert.pem"
    server_common_name: str = "localhost"
    cert_generator: str = "openssl"
    openssl_path: str = "openssl"
    cert_validity_days: int = 365
    reject_unauthorized: bool = True

    # TLS settings
    min_tls_version: str = "TLSv1.2"
    max_tls_version: str = "TLSv1.3"
    ciphers: str = DEFAULT_CIPHERS
    handshake_timeout_seconds: int = 120

    # Listener settings
    host: str = "0.0.0.0"
    api_port: int = 8446
    enable_cors: bool = True

    # Application settings
    log_level: str = "INFO"
    log_file_path: str = "logs/mtls_server.log"

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate_types()

    def _validate_types(self):
        """Ensure all configuration values have correct types."""
        if not isinstance(self.api_port, int) or not (0 <= self.api_port <= 65535):
            raise ValueError("api_port must be an integer between 0 and 65535")

        if not isinstance(self.cert_validity_days, int) or self.cert_validity_days <= 0:
            raise ValueError("cert_validity_days must be a positive integer")

        if not isinstance(self.handshake_timeout_seconds, int) or self.handshake_timeout_seconds < 0:
            raise ValueError("handshake_timeout_seconds must be a non-negative integer")

        if self.cert_generator not in ["openssl", "builtin"]:
            raise ValueError("cert_generator must be one of: openssl, builtin")

        if self.min_tls_version not in TLS_VERSIONS:
            raise ValueError(f"min_tls_version must be one of: {', '.join(TLS_VERSIONS)}")

        if self.max_tls_version not in TLS_VERSIONS:
            raise ValueError(f"max_tls_version must be one of: {', '.join(TLS_VERSIONS)}")

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError("log_level must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL")

    @property
    def transport_policy(self) -> TransportPolicy:
        """Transport policy fixed for the lifetime of the listener."""
        return TransportPolicy(
            minimum_version=self.min_tls_version,
            maximum_version=self.max_tls_version,
            ciphers=self.ciphers,
            reject_unauthorized=self.reject_unauthorized,
            handshake_timeout_seconds=self.handshake_timeout_seconds or None
        )


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    severity: str = "error"  # error, warning

    def __str__(self):
        return f"{self.severity.upper()}: {self.field} - {self.message}"


@dataclass
class ConfigValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: list[ConfigValidationError]
    warnings: list[ConfigValidationError]

    def __post_init__(self):
        """Separate errors and warnings."""
        all_issues = self.errors + self.warnings
        self.errors = [e for e in all_issues if e.severity == "error"]
        self.warnings = [e for e in all_issues if e.severity == "warning"]

    def has_errors(self) -> bool:
        """Check if there are any validation errors."""
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        """Check if there are any validation warnings."""
        return len(self.warnings) > 0

    def get_error_summary(self) -> str:
        """Get a formatted summary of all errors and warnings."""
        lines = []

        if self.errors:
            lines.append("Configuration Errors:")
            for error in self.errors:
                lines.append(f"  - {error}")

        if self.warnings:
            lines.append("Configuration Warnings:")
            for warning in self.warnings:
                lines.append(f"  - {warning}")

        return "\n".join(lines) if lines else "Configuration is valid"
