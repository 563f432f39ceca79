"""
Main application entry point for the mTLS server.
Handles configuration, certificate bootstrap, listener start-up and graceful shutdown.
"""

import os
import sys
import signal
import logging
import threading
from typing import Optional

from .services.config_service import ConfigService
from .services.logging_service import LoggingService
from .security.bootstrap import CertificateBootstrap
from .security.security_service import SecurityService
from .app import MTLSFlaskApp


class MTLSServerApplication:
    """Main application class wiring bootstrap, gate and listener together."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the mTLS server application.

        Args:
            config_path: Path to configuration file (optional)
        """
        self.config_path = config_path or self._get_default_config_path()
        self.logger = None
        self.config_service = None
        self.config = None
        self.logging_service = None
        self.bootstrap_result = None
        self.security_service = None
        self.flask_app = None

        self._is_running = False

        self._setup_signal_handlers()

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        possible_paths = [
            "config/mtls_server.properties",
            "mtls_server.properties",
            os.path.expanduser("~/.mtls_gate/mtls_server.properties"),
            "/etc/mtls_gate/mtls_server.properties"
        ]

        for path in possible_paths:
            if os.path.exists(path):
                return path

        return possible_paths[0]

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return

        def signal_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            if self.logger:
                self.logger.info(f"Received {signal_name} signal, initiating graceful shutdown...")
            # serve_forever runs on this thread; shutdown() blocks until it returns
            threading.Thread(target=self.shutdown, daemon=True).start()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def initialize(self) -> bool:
        """
        Initialize all application components.

        Returns:
            True if initialization successful, False otherwise
        """
        try:
            self._setup_logging()

            self.logger.info("Starting mTLS server initialization...")

            if not self._load_configuration():
                return False

            if not self._bootstrap_certificates():
                return False

            if not self._initialize_flask_app():
                return False

            self.logging_service.log_with_context(
                'info',
                "mTLS server initialized successfully",
                port=self.config.api_port,
                tls_versions=f"{self.config.min_tls_version}-{self.config.max_tls_version}",
                reject_unauthorized=self.config.reject_unauthorized,
                certificate_generated=self.bootstrap_result.generated
            )
            return True

        except Exception as e:
            if self.logging_service:
                self.logging_service.track_error(e, {'component': 'initialize'})
            if self.logger:
                self.logger.error(f"Failed to initialize application: {str(e)}")
            else:
                print(f"Failed to initialize application: {str(e)}")
            return False

    def _setup_logging(self):
        """Console logging until the configured handlers are installed."""
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[logging.StreamHandler(sys.stdout)]
        )

        self.logger = logging.getLogger(__name__)

    def _load_configuration(self) -> bool:
        """Load application configuration."""
        try:
            self.logger.info(f"Loading configuration from: {self.config_path}")

            self.config_service = ConfigService()

            if not os.path.exists(self.config_path):
                self.logger.warning(f"Configuration file not found: {self.config_path}")
                self.config_service.create_default_config_file(self.config_path)
                self.logger.info(f"Default configuration created at: {self.config_path}")

            self.config = self.config_service.load_config(self.config_path)

            self.logging_service = LoggingService(self.config)
            self.logger.info(f"Log level set to: {self.config.log_level}")

            self.logger.info("Configuration loaded successfully")
            return True

        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to load configuration: {str(e)}")
            return False

    def _bootstrap_certificates(self) -> bool:
        """Ensure key, certificate and CA are present before anything binds."""
        self.logger.info("Checking server certificates...")

        self.bootstrap_result = CertificateBootstrap(self.config).ensure_certificates()
        if not self.bootstrap_result.success:
            self.logger.error(f"Server initialization error: {self.bootstrap_result.error_message}")
            return False

        if self.bootstrap_result.generated:
            self.logger.warning(
                "A self-signed server certificate was generated; clients must trust it explicitly"
            )

        self.security_service = SecurityService(self.config, self.bootstrap_result.bundle)
        return True

    def _initialize_flask_app(self) -> bool:
        """Initialize Flask web application."""
        try:
            self.flask_app = MTLSFlaskApp(self.config, self.security_service, self.logging_service)
            self.logger.info("Flask application initialized")
            return True

        except Exception as e:
            self.logger.error(f"Failed to initialize Flask application: {str(e)}")
            return False

    def run(self, host: Optional[str] = None, port: Optional[int] = None) -> bool:
        """
        Bind the listener and serve until shut down.

        Args:
            host: Host to bind to (uses config if not specified)
            port: Port to bind to (uses config if not specified)

        Returns:
            False if the listener could not be started
        """
        if self.flask_app is None:
            self.logger.error("Application not initialized. Call initialize() first.")
            return False

        try:
            self._is_running = True
            self.flask_app.run(host=host, port=port)
            return True
        except OSError as e:
            self.logger.error(f"Could not start listener: {str(e)}")
            return False
        finally:
            self._is_running = False

    def shutdown(self):
        """Perform graceful shutdown of the application."""
        if not self._is_running:
            return

        self.logger.info("Initiating graceful shutdown...")
        self.flask_app.stop()

        if self.logging_service:
            summary = self.logging_service.connection_reporter.get_summary()
            self.logger.info(f"Connection summary: {summary}")
            self.logger.info(f"Error summary: {self.logging_service.get_error_summary()}")

        self.logger.info("Graceful shutdown completed")

        if self.logging_service:
            self.logging_service.close()

    def is_running(self) -> bool:
        """Check if the application is running."""
        return self._is_running

    def get_status(self) -> dict:
        """Get application status information."""
        status = {
            'running': self._is_running,
            'config_path': self.config_path,
            'certificates_ready': bool(self.bootstrap_result and self.bootstrap_result.success),
            'certificate_generated': bool(self.bootstrap_result and self.bootstrap_result.generated)
        }

        if self.config:
            status.update({
                'port': self.config.api_port,
                'tls_versions': f"{self.config.min_tls_version}-{self.config.max_tls_version}",
                'reject_unauthorized': self.config.reject_unauthorized
            })

        return status


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='mTLS Server')
    parser.add_argument('--config', '-c', help='Configuration file path')
    parser.add_argument('--host', help='Host to bind to (uses config if not specified)')
    parser.add_argument('--port', type=int, help='Port to bind to (uses config if not specified)')
    parser.add_argument('--check-config', action='store_true', help='Check configuration and certificates, then exit')

    args = parser.parse_args()

    app = MTLSServerApplication(config_path=args.config)

    if not app.initialize():
        print("Failed to initialize application")
        sys.exit(1)

    if args.check_config:
        print("Configuration check passed")
        status = app.get_status()
        print(f"Config path: {status['config_path']}")
        print(f"Port: {status['port']}")
        print(f"TLS versions: {status['tls_versions']}")
        print(f"Reject unauthorized: {status['reject_unauthorized']}")
        print(f"Certificate generated: {status['certificate_generated']}")
        sys.exit(0)

    if not app.run(host=args.host, port=args.port):
        sys.exit(1)


if __name__ == '__main__':
    main()
