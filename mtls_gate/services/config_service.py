"""
Configuration service for loading and validating server settings.
"""
import os
import ssl
import configparser
from typing import Dict, Any
import logging

from ..models.config import Config, ConfigValidationError, ConfigValidationResult, TLS_VERSIONS


class ConfigService:
    """Service for loading and validating server configuration."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def load_config(self, config_path: str) -> Config:
        """
        Load configuration from a property file.

        Args:
            config_path: Path to the configuration file

        Returns:
            Config object with loaded settings

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid or has validation errors
        """
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        config_data = self._load_config_file(config_path)
        config = self._create_config_from_data(config_data)

        validation_result = self.validate_config(config)

        if validation_result.has_errors():
            error_summary = validation_result.get_error_summary()
            raise ValueError(f"Configuration validation failed:\n{error_summary}")

        if validation_result.has_warnings():
            warning_summary = validation_result.get_error_summary()
            self.logger.warning(f"Configuration warnings:\n{warning_summary}")

        return config

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """Load configuration data from file."""
        config_parser = configparser.ConfigParser(interpolation=None)

        try:
            config_parser.read(config_path)
        except configparser.Error as e:
            raise ValueError(f"Failed to parse configuration file: {e}")

        # Flatten to "section.key"
        config_data = {}
        for section in config_parser.sections():
            for key, value in config_parser.items(section):
                config_data[f"{section}.{key}"] = value

        for key, value in config_parser.defaults().items():
            if key not in config_data:
                config_data[key] = value

        return config_data

    def _create_config_from_data(self, config_data: Dict[str, Any]) -> Config:
        """Create Config object from configuration data."""
        config_mapping = {
            # Certificate settings
            "security.server_key_path": ("server_key_path", str),
            "server_key_path": ("server_key_path", str),
            "security.server_cert_path": ("server_cert_path", str),
            "server_cert_path": ("server_cert_path", str),
            "security.ca_cert_path": ("ca_cert_path", str),
            "ca_cert_path": ("ca_cert_path", str),
            "security.server_common_name": ("server_common_name", str),
            "server_common_name": ("server_common_name", str),
            "security.cert_generator": ("cert_generator", str),
            "cert_generator": ("cert_generator", str),
            "security.openssl_path": ("openssl_path", str),
            "openssl_path": ("openssl_path", str),
            "security.cert_validity_days": ("cert_validity_days", int),
            "cert_validity_days": ("cert_validity_days", int),
            "security.reject_unauthorized": ("reject_unauthorized", bool),
            "reject_unauthorized": ("reject_unauthorized", bool),

            # TLS settings
            "tls.min_version": ("min_tls_version", str),
            "min_tls_version": ("min_tls_version", str),
            "tls.max_version": ("max_tls_version", str),
            "max_tls_version": ("max_tls_version", str),
            "tls.ciphers": ("ciphers", str),
            "ciphers": ("ciphers", str),
            "tls.handshake_timeout_seconds": ("handshake_timeout_seconds", int),
            "handshake_timeout_seconds": ("handshake_timeout_seconds", int),

            # Listener settings
            "server.host": ("host", str),
            "host": ("host", str),
            "server.port": ("api_port", int),
            "api_port": ("api_port", int),
            "server.enable_cors": ("enable_cors", bool),
            "enable_cors": ("enable_cors", bool),

            # Application settings
            "app.log_level": ("log_level", str),
            "log_level": ("log_level", str),
            "app.log_file_path": ("log_file_path", str),
            "log_file_path": ("log_file_path", str),
        }

        config_kwargs = {}

        for config_key, raw_value in config_data.items():
            if config_key in config_mapping:
                field_name, field_type = config_mapping[config_key]
                try:
                    if field_type == bool:
                        value = self._parse_bool(raw_value)
                    elif field_type == int:
                        value = int(raw_value)
                    else:
                        value = str(raw_value).strip()

                    config_kwargs[field_name] = value
                except (ValueError, TypeError) as e:
                    raise ValueError(f"Invalid value for {config_key}: {raw_value} ({e})")

        return Config(**config_kwargs)

    def _parse_bool(self, value: Any) -> bool:
        """Parse boolean value from string."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "yes", "1", "on", "enabled")
        return bool(value)

    def validate_config(self, config: Config) -> ConfigValidationResult:
        """
        Validate configuration settings.

        Args:
            config: Configuration object to validate

        Returns:
            ConfigValidationResult with validation results
        """
        errors = []
        warnings = []

        cert_files = [
            ("server_key_path", config.server_key_path),
            ("server_cert_path", config.server_cert_path),
            ("ca_cert_path", config.ca_cert_path)
        ]
        for field_name, cert_path in cert_files:
            if not cert_path:
                errors.append(ConfigValidationError(
                    field_name,
                    f"{field_name} is required"
                ))

        if not config.server_common_name:
            errors.append(ConfigValidationError(
                "server_common_name",
                "A common name is required to generate the server certificate"
            ))

        # Protocol window
        if TLS_VERSIONS.index(config.min_tls_version) > TLS_VERSIONS.index(config.max_tls_version):
            errors.append(ConfigValidationError(
                "min_tls_version",
                f"Minimum TLS version {config.min_tls_version} is above maximum {config.max_tls_version}"
            ))
        elif TLS_VERSIONS.index(config.min_tls_version) < TLS_VERSIONS.index("TLSv1.2"):
            warnings.append(ConfigValidationError(
                "min_tls_version",
                f"Minimum TLS version {config.min_tls_version} is below TLSv1.2",
                "warning"
            ))

        # Cipher allow-list
        if not config.ciphers.strip():
            errors.append(ConfigValidationError(
                "ciphers",
                "Cipher allow-list must not be empty"
            ))
        else:
            try:
                ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER).set_ciphers(config.ciphers)
            except ssl.SSLError:
                errors.append(ConfigValidationError(
                    "ciphers",
                    f"No usable cipher in allow-list: {config.ciphers}"
                ))

        if not config.reject_unauthorized:
            warnings.append(ConfigValidationError(
                "reject_unauthorized",
                "Clients without a certificate will complete the handshake and be rejected per request",
                "warning"
            ))

        if config.handshake_timeout_seconds == 0:
            warnings.append(ConfigValidationError(
                "handshake_timeout_seconds",
                "Handshake timeout disabled; stalled handshakes hold a worker thread indefinitely",
                "warning"
            ))

        if config.log_file_path:
            log_dir = os.path.dirname(config.log_file_path)
            if log_dir and not os.path.exists(log_dir):
                warnings.append(ConfigValidationError(
                    "log_file_path",
                    f"Log directory does not exist: {log_dir}",
                    "warning"
                ))

        all_issues = errors + warnings
        return ConfigValidationResult(
            is_valid=len(errors) == 0,
            errors=all_issues,
            warnings=[]
        )

    def create_default_config_file(self, config_path: str) -> None:
        """
        Create a default configuration file with example settings.

        Args:
            config_path: Path where to create the config file
        """
        config_content = """# mTLS Server Configuration File

[security]
server_key_path = certs/server_key.pem
server_cert_path = certs/server_cert.pem
ca_cert_path = certs/ca_cert.pem
server_common_name = localhost
cert_generator = openssl
openssl_path = openssl
cert_validity_days = 365
reject_unauthorized = true

[tls]
min_version = TLSv1.2
max_version = TLSv1.3
ciphers = ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384
handshake_timeout_seconds = 120

[server]
host = 0.0.0.0
port = 8446
enable_cors = true

[app]
log_level = INFO
log_file_path = logs/mtls_server.log
"""

        config_dir = os.path.dirname(config_path)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)

        with open(config_path, 'w') as f:
            f.write(config_content)

        self.logger.info(f"Created default configuration file: {config_path}")
