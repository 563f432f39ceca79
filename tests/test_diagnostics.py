"""
Tests for the server diagnostics tool.
"""
import os
import shutil
import ssl
import subprocess
import tempfile
import unittest
from unittest.mock import Mock, patch

import requests

from mtls_gate.diagnostics import ServerDiagnostics, start_server_process, stop_server_process
from mtls_gate.models.config import Config

from cert_factory import PKIFixture, create_test_cert, cert_pem, write_file


class TestServerDiagnostics(unittest.TestCase):
    """Test cases for ServerDiagnostics checks."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.pki = PKIFixture(self.temp_dir)
        os.chmod(self.pki.server_key_path, 0o600)
        self.config = Config(
            server_key_path=self.pki.server_key_path,
            server_cert_path=self.pki.server_cert_path,
            ca_cert_path=self.pki.ca_cert_path,
            api_port=9443
        )
        self.diagnostics = ServerDiagnostics(self.config)

        print_patcher = patch('builtins.print')
        print_patcher.start()
        self.addCleanup(print_patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def messages(self, level):
        return [r.message for r in self.diagnostics.results if r.type == level]

    def test_required_files_present(self):
        self.diagnostics.check_required_files()

        self.assertEqual(self.diagnostics.count('success'), 3)
        self.assertEqual(self.diagnostics.count('error'), 0)
        self.assertEqual(self.diagnostics.count('warning'), 0)

    def test_required_file_missing(self):
        os.remove(self.pki.ca_cert_path)

        self.diagnostics.check_required_files()

        self.assertEqual(self.diagnostics.count('error'), 1)
        self.assertIn('CA Certificate', self.messages('error')[0])

    def test_private_key_permissions(self):
        os.chmod(self.pki.server_key_path, 0o644)

        self.diagnostics.check_required_files()

        self.assertIn('too open permissions: 644', self.messages('warning')[0])

    def test_valid_certificates(self):
        self.diagnostics.validate_certificates()

        self.assertEqual(self.diagnostics.count('error'), 0)
        self.assertIn('Server Certificate is properly signed by CA', self.messages('success'))
        self.assertIn('CA Certificate has correct basicConstraints', self.messages('success'))
        self.assertIn('Server Certificate is within validity period', self.messages('success'))

    def test_server_certificate_not_signed_by_ca(self):
        cert, _ = create_test_cert(None, None, "localhost")
        write_file(self.temp_dir, 'server_cert.pem', cert_pem(cert))

        self.diagnostics.validate_certificates()

        self.assertTrue(any('verification failed' in m for m in self.messages('error')))

    def test_ca_without_basic_constraints(self):
        cert, _ = create_test_cert(None, None, "Not A CA")
        write_file(self.temp_dir, 'ca_cert.pem', cert_pem(cert))

        self.diagnostics.validate_certificates()

        self.assertIn('CA Certificate missing proper basicConstraints', self.messages('error'))

    def test_unparseable_certificate(self):
        write_file(self.temp_dir, 'ca_cert.pem', b'not a certificate')

        self.diagnostics.validate_certificates()

        self.assertEqual(self.diagnostics.count('error'), 1)
        self.assertIn('Certificate validation error', self.messages('error')[0])

    def test_server_configuration_defaults(self):
        self.diagnostics.check_server_configuration()

        self.assertEqual(self.diagnostics.count('error'), 0)
        self.assertEqual(self.diagnostics.count('warning'), 0)
        self.assertIn('Unauthorized clients rejected', self.messages('success'))

    def test_server_configuration_permissive(self):
        self.config.reject_unauthorized = False
        self.config.min_tls_version = "TLSv1.1"

        self.diagnostics.check_server_configuration()

        self.assertEqual(self.diagnostics.count('warning'), 2)

    def test_server_configuration_reflects_verify_mode(self):
        """The client certificate verdict comes from the context the server builds."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.verify_mode = ssl.CERT_NONE

        with patch('mtls_gate.diagnostics.SecurityService') as mock_service:
            mock_service.return_value.setup_mtls_context.return_value = context
            self.diagnostics.check_server_configuration()

        self.assertIn('Client certificate request disabled', self.messages('error'))
        self.assertNotIn('Client certificate request enabled', self.messages('success'))

    def test_server_configuration_without_key(self):
        os.remove(self.pki.server_key_path)

        self.diagnostics.check_server_configuration()

        self.assertTrue(any('Could not build the server TLS context' in m for m in self.messages('error')))
        self.assertNotIn('Client certificate request enabled', self.messages('success'))

    def test_server_configuration_bad_ciphers(self):
        self.config.ciphers = "NOT-A-REAL-CIPHER"

        self.diagnostics.check_server_configuration()

        self.assertTrue(any('Cipher allow-list rejected' in m for m in self.messages('error')))

    @patch('mtls_gate.diagnostics.requests.get')
    def test_server_access(self, mock_get):
        mock_get.return_value = Mock(status_code=200)
        diagnostics = ServerDiagnostics(
            self.config,
            client_cert=self.pki.client_cert_path,
            client_key=self.pki.client_key_path
        )

        diagnostics.test_server_access()

        args, kwargs = mock_get.call_args
        self.assertEqual(args[0], 'https://localhost:9443/api/health')
        self.assertEqual(kwargs['cert'], (self.pki.client_cert_path, self.pki.client_key_path))
        self.assertEqual(diagnostics.count('success'), 1)

    @patch('mtls_gate.diagnostics.requests.get')
    def test_server_access_rejected(self, mock_get):
        mock_get.return_value = Mock(status_code=401)

        self.diagnostics.test_server_access()

        self.assertIsNone(mock_get.call_args[1]['cert'])
        self.assertIn('Server responded with status: 401', self.messages('warning'))

    @patch('mtls_gate.diagnostics.requests.get')
    def test_server_unreachable(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

        self.diagnostics.test_server_access()

        self.assertIn('Server access error', self.messages('error')[0])

    @patch('mtls_gate.diagnostics.requests.get')
    def test_run_diagnostics_exit_code(self, mock_get):
        mock_get.return_value = Mock(status_code=200)

        self.assertEqual(self.diagnostics.run_diagnostics(), 0)

        os.remove(self.pki.server_key_path)
        self.assertEqual(ServerDiagnostics(self.config).run_diagnostics(), 1)


class TestServerProcess(unittest.TestCase):
    """Test cases for the --start-server helpers."""

    @patch('mtls_gate.diagnostics.subprocess.Popen')
    def test_start_server_process(self, mock_popen):
        start_server_process('config/test.properties')

        command = mock_popen.call_args[0][0]
        self.assertEqual(command[1:], ['-m', 'mtls_gate.main', '--config', 'config/test.properties'])

    def test_stop_server_process(self):
        process = Mock()

        stop_server_process(process)

        process.terminate.assert_called_once()
        process.kill.assert_not_called()

    def test_stop_server_process_kills_after_timeout(self):
        process = Mock()
        process.wait.side_effect = [subprocess.TimeoutExpired('server', 10), 0]

        stop_server_process(process)

        process.kill.assert_called_once()


if __name__ == '__main__':
    unittest.main()
