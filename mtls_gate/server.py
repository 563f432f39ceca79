"""
Threaded HTTPS listener performing the TLS handshake per connection.

Werkzeug wraps the listening socket when given an ``ssl_context``, which runs
every handshake inside ``accept()`` on the serving thread. ``MTLSServer``
accepts plain sockets instead and completes the handshake in the worker
thread that owns the connection.
"""
import logging
import sys
import socket
import ssl
import time
from typing import Optional

from werkzeug.serving import ThreadedWSGIServer, WSGIRequestHandler

from .security.models import HandshakeOutcome


def format_address(client_address) -> str:
    if isinstance(client_address, tuple) and len(client_address) >= 2:
        return f"{client_address[0]}:{client_address[1]}"
    return str(client_address)


class MTLSRequestHandler(WSGIRequestHandler):
    """Request handler adding the negotiated TLS parameters to the environ."""

    def make_environ(self):
        environ = super().make_environ()

        connection = self.connection
        if isinstance(connection, ssl.SSLSocket):
            environ['SSL_PROTOCOL'] = connection.version()
            cipher = connection.cipher()
            environ['SSL_CIPHER'] = cipher[0] if cipher else None
            # getpeercert() only decodes a certificate the handshake verified
            environ['SSL_CLIENT_VERIFY'] = 'SUCCESS' if connection.getpeercert() else 'NONE'

        return environ


class MTLSServer(ThreadedWSGIServer):
    """HTTPS server requiring client certificates, one thread per connection."""

    def __init__(self, host: str, port: int, app, ssl_context: ssl.SSLContext,
                 event_reporter=None, handshake_timeout: Optional[float] = None):
        super().__init__(host, port, app, handler=MTLSRequestHandler)
        # Set after binding so Werkzeug does not wrap the listening socket;
        # it still reports the https scheme and handles TLS errors per request.
        self.ssl_context = ssl_context
        self.event_reporter = event_reporter
        self.handshake_timeout = handshake_timeout
        self.logger = logging.getLogger(__name__)

    def finish_request(self, request, client_address):
        """Complete the TLS handshake, then serve HTTP on the secured connection."""
        tls_connection = self.handshake(request, client_address)
        if tls_connection is None:
            return

        try:
            super().finish_request(tls_connection, client_address)
        finally:
            self._close_connection(tls_connection)

    def handshake(self, sock: socket.socket, client_address) -> Optional[ssl.SSLSocket]:
        """Run the server side of the handshake.

        Returns:
            The secured connection, or None when the handshake failed and the
            connection has been closed.
        """
        address = format_address(client_address)
        started = time.monotonic()
        tls_connection = None

        try:
            sock.settimeout(self.handshake_timeout)
            tls_connection = self.ssl_context.wrap_socket(
                sock, server_side=True, do_handshake_on_connect=False
            )
            tls_connection.do_handshake()
            tls_connection.settimeout(None)
        except (ssl.SSLError, OSError) as e:
            if isinstance(e, socket.timeout):
                error_message = f"handshake timed out after {self.handshake_timeout}s"
            else:
                error_message = str(e) or type(e).__name__
            self._report(HandshakeOutcome(
                client_address=address,
                success=False,
                error_message=error_message,
                duration_ms=(time.monotonic() - started) * 1000
            ))
            self._close_connection(tls_connection or sock)
            return None

        cipher = tls_connection.cipher()
        self._report(HandshakeOutcome(
            client_address=address,
            success=True,
            protocol=tls_connection.version(),
            cipher=cipher[0] if cipher else None,
            peer_verified=bool(tls_connection.getpeercert()),
            duration_ms=(time.monotonic() - started) * 1000
        ))
        return tls_connection

    def _report(self, outcome: HandshakeOutcome):
        if self.event_reporter is not None:
            self.event_reporter.report_handshake(outcome)
        elif outcome.success:
            self.logger.debug(f"Secure connection established with {outcome.client_address}")
        else:
            self.logger.warning(f"TLS client error from {outcome.client_address}: {outcome.error_message}")

    def _close_connection(self, connection):
        try:
            connection.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        connection.close()

    def shutdown_request(self, request):
        # The raw socket was detached by wrap_socket or already closed.
        try:
            request.close()
        except OSError:
            pass

    def handle_error(self, request, client_address):
        """Log a fault from one connection without stopping the listener."""
        error = sys.exc_info()[1]
        if self.event_reporter is not None and error is not None:
            self.event_reporter.report_unexpected_error(error, format_address(client_address))
        else:
            self.logger.exception(f"Unexpected error serving {format_address(client_address)}")