"""
Diagnostics for an mTLS server installation.

Checks the certificate files, the certificate chain, the transport settings
and whether the server answers on its health endpoint.
"""
import logging
import os
import ssl
import stat
import subprocess
import sys
import time
import warnings
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import requests
from cryptography import x509
from cryptography.exceptions import InvalidSignature

from .models.config import Config, TLS_VERSIONS
from .security.models import CertificateBundle
from .security.security_service import SecurityService


@dataclass
class DiagnosticResult:
    """One recorded diagnostic finding."""
    timestamp: str
    message: str
    type: str = "info"  # success, error, warning, info


SYMBOLS = {
    'success': '✓',
    'error': '✗',
    'warning': '⚠',
    'info': 'ℹ',
}

LOG_LEVELS = {
    'success': logging.INFO,
    'error': logging.ERROR,
    'warning': logging.WARNING,
    'info': logging.INFO,
}


class ServerDiagnostics:
    """Run the diagnostic checks against a configuration and a live server."""

    def __init__(self, config: Config, host: str = "localhost", port: Optional[int] = None,
                 client_cert: Optional[str] = None, client_key: Optional[str] = None,
                 timeout: int = 5):
        self.config = config
        self.host = host
        self.port = port or config.api_port
        self.client_cert = client_cert
        self.client_key = client_key
        self.timeout = timeout
        self.results: List[DiagnosticResult] = []
        self.logger = logging.getLogger(__name__)

    def log(self, message: str, level: str = 'info'):
        timestamp = datetime.now().isoformat()
        self.logger.log(LOG_LEVELS.get(level, logging.INFO), f"{SYMBOLS.get(level, '')} {message}")
        self.results.append(DiagnosticResult(timestamp=timestamp, message=message, type=level))

    def run_diagnostics(self) -> int:
        """Run every check, print the summary and return the exit code."""
        print('\n=== Starting Server Diagnostics ===\n')

        self.check_required_files()
        self.validate_certificates()
        self.check_server_configuration()
        self.test_server_access()

        self.print_summary()
        return 1 if self.count('error') else 0

    def check_required_files(self):
        print('\n1. Checking Required Files:\n')

        required_files = [
            (self.config.server_key_path, 'Server Private Key'),
            (self.config.server_cert_path, 'Server Certificate'),
            (self.config.ca_cert_path, 'CA Certificate'),
        ]

        for path, description in required_files:
            try:
                mode = os.stat(path).st_mode
            except OSError as e:
                self.log(f"{description} ({path}) is missing: {e.strerror}", 'error')
                continue

            if not os.access(path, os.R_OK):
                self.log(f"{description} ({path}) is not readable", 'error')
                continue

            self.log(f"{description} ({path}) exists", 'success')

            if path == self.config.server_key_path and mode & (stat.S_IRGRP | stat.S_IROTH):
                self.log(f"{path} has too open permissions: {oct(stat.S_IMODE(mode))[2:]}", 'warning')

    def validate_certificates(self):
        print('\n2. Validating Certificates:\n')

        try:
            ca_cert = self._load_certificate(self.config.ca_cert_path)
            server_cert = self._load_certificate(self.config.server_cert_path)
        except (OSError, ValueError) as e:
            self.log(f"Certificate validation error: {e}", 'error')
            return

        self.log('CA Certificate loaded successfully', 'success')
        self.log(f"CA Certificate Subject: {ca_cert.subject.rfc4514_string()}")

        try:
            constraints = ca_cert.extensions.get_extension_for_class(x509.BasicConstraints).value
            is_ca = constraints.ca
        except x509.ExtensionNotFound:
            is_ca = False

        if is_ca:
            self.log('CA Certificate has correct basicConstraints', 'success')
        else:
            self.log('CA Certificate missing proper basicConstraints', 'error')

        self.log('Server Certificate loaded successfully', 'success')
        self.log(f"Server Certificate Subject: {server_cert.subject.rfc4514_string()}")

        try:
            server_cert.verify_directly_issued_by(ca_cert)
            self.log('Server Certificate is properly signed by CA', 'success')
        except (ValueError, TypeError, InvalidSignature) as e:
            self.log(f"Server Certificate verification failed: {e}", 'error')

        now = datetime.now(timezone.utc)
        if server_cert.not_valid_before_utc <= now <= server_cert.not_valid_after_utc:
            self.log('Server Certificate is within validity period', 'success')
        else:
            self.log('Server Certificate is not valid at current date', 'error')

    def check_server_configuration(self):
        print('\n3. Checking Server Configuration:\n')

        try:
            context = SecurityService(self.config, self._load_bundle()).setup_mtls_context()
        except (OSError, ValueError, ssl.SSLError) as e:
            self.log(f"Could not build the server TLS context: {e}", 'error')
            context = None

        if context is not None:
            if context.verify_mode == ssl.CERT_NONE:
                self.log('Client certificate request disabled', 'error')
            elif context.verify_mode == ssl.CERT_REQUIRED:
                self.log('Client certificate request enabled', 'success')
                self.log('Unauthorized clients rejected', 'success')
            else:
                self.log('Client certificate request enabled', 'success')
                self.log('Unauthorized clients complete the handshake and are rejected per request', 'warning')

        minimum = TLS_VERSIONS.index(self.config.min_tls_version)
        maximum = TLS_VERSIONS.index(self.config.max_tls_version)
        if minimum > maximum:
            self.log(
                f"TLS version window is empty: {self.config.min_tls_version}-{self.config.max_tls_version}",
                'error'
            )
        elif minimum < TLS_VERSIONS.index("TLSv1.2"):
            self.log(f"Minimum TLS version {self.config.min_tls_version} is below TLSv1.2", 'warning')
        else:
            self.log(
                f"TLS versions restricted to {self.config.min_tls_version}-{self.config.max_tls_version}",
                'success'
            )

        try:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.set_ciphers(self.config.ciphers)
            self.log(f"Cipher allow-list accepted ({len(context.get_ciphers())} suites)", 'success')
        except ssl.SSLError as e:
            self.log(f"Cipher allow-list rejected by OpenSSL: {e}", 'error')

    def test_server_access(self):
        print('\n4. Testing Server Accessibility:\n')

        url = f"https://{self.host}:{self.port}/api/health"
        cert = None
        if self.client_cert and self.client_key:
            cert = (self.client_cert, self.client_key)

        try:
            with warnings.catch_warnings():
                # Server identity is not verified here, only reachability
                warnings.simplefilter('ignore')
                response = requests.get(url, cert=cert, verify=False, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            self.log(f"Server access error: {e}", 'error')
            return

        self.log(
            f"Server responded with status: {response.status_code}",
            'success' if response.status_code == 200 else 'warning'
        )

    def count(self, level: str) -> int:
        return sum(1 for r in self.results if r.type == level)

    def print_summary(self):
        print('\n=== Diagnostic Summary ===\n')

        print(f"Passed: {self.count('success')}")
        print(f"Failed: {self.count('error')}")
        print(f"Warnings: {self.count('warning')}")

        if self.count('error'):
            print('\nRequired Actions:')
            for result in self.results:
                if result.type == 'error':
                    print(f"- {result.message}")

        if self.count('warning'):
            print('\nRecommendations:')
            for result in self.results:
                if result.type == 'warning':
                    print(f"- {result.message}")

    def _load_bundle(self) -> CertificateBundle:
        files = {}
        for name, path in (('server_key', self.config.server_key_path),
                           ('server_cert', self.config.server_cert_path),
                           ('ca_cert', self.config.ca_cert_path)):
            with open(path, 'rb') as f:
                files[name] = f.read()
        return CertificateBundle(**files)

    def _load_certificate(self, path: str) -> x509.Certificate:
        with open(path, 'rb') as f:
            return x509.load_pem_x509_certificate(f.read())


def start_server_process(config_path: Optional[str]) -> subprocess.Popen:
    """Launch the server in a child process."""
    command = [sys.executable, '-m', 'mtls_gate.main']
    if config_path:
        command += ['--config', config_path]
    return subprocess.Popen(command)


def stop_server_process(process: subprocess.Popen, timeout: int = 10):
    process.terminate()
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def main():
    """Command line entry point for the diagnostics."""
    import argparse

    from .services.config_service import ConfigService

    parser = argparse.ArgumentParser(description='mTLS Server Diagnostics')
    parser.add_argument('--config', '-c', help='Configuration file path (defaults are used if omitted)')
    parser.add_argument('--host', default='localhost', help='Server host to check (default: localhost)')
    parser.add_argument('--port', type=int, help='Server port to check (uses config if not specified)')
    parser.add_argument('--client-cert', help='Client certificate presented to the server')
    parser.add_argument('--client-key', help='Private key for the client certificate')
    parser.add_argument('--start-server', action='store_true',
                        help='Start the server, run the diagnostics against it, then stop it')
    parser.add_argument('--startup-delay', type=float, default=2.0,
                        help='Seconds to wait for the server to start (default: 2)')

    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(message)s')

    try:
        config = ConfigService().load_config(args.config) if args.config else Config()
    except (OSError, ValueError) as e:
        print(f"Failed to load configuration: {e}")
        sys.exit(1)

    diagnostics = ServerDiagnostics(
        config,
        host=args.host,
        port=args.port,
        client_cert=args.client_cert,
        client_key=args.client_key
    )

    if not args.start_server:
        sys.exit(diagnostics.run_diagnostics())

    print('Starting server and running diagnostics...')
    server = start_server_process(args.config)
    try:
        time.sleep(args.startup_delay)
        print('\nRunning diagnostics...')
        code = diagnostics.run_diagnostics()
    finally:
        stop_server_process(server)

    print(f"\nDiagnostics completed with code {code}")
    sys.exit(code)


if __name__ == '__main__':
    main()
