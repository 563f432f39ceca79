"""
Flask application behind the mTLS gate.
"""
from flask import Flask, jsonify, g
import logging
from typing import Optional

from .security import SecurityService
from .security.auth_middleware import setup_mtls_authentication, require_client_certificate
from .server import MTLSServer


class MTLSFlaskApp:
    """Flask application with mTLS authentication."""

    def __init__(self, config, security_service: SecurityService, logging_service=None):
        """Initialize the secure Flask application."""
        self.app = Flask(__name__)
        self.config = config
        self.security_service = security_service
        self.logging_service = logging_service
        self.event_reporter = logging_service.connection_reporter if logging_service else None
        self.logger = logging.getLogger(__name__)
        self._server: Optional[MTLSServer] = None

        setup_mtls_authentication(self.app, self.security_service, self.event_reporter)

        self._setup_routes()
        self._setup_error_handlers()
        self._setup_response_headers()

    def _setup_routes(self):
        """Set up API routes."""

        @self.app.route('/', methods=['GET'])
        @self.app.route('/api/health', methods=['GET'])
        @require_client_certificate
        def client_status():
            """Echo the authenticated client's certificate details."""
            return jsonify({
                'status': 'success',
                'message': 'mTLS connection successful',
                'clientInfo': g.authorization.to_client_info()
            })

    def _setup_error_handlers(self):
        """Set up error handlers."""

        @self.app.errorhandler(404)
        def not_found(error):
            return jsonify({
                'status': 'error',
                'message': 'The requested endpoint does not exist'
            }), 404

        @self.app.errorhandler(405)
        def method_not_allowed(error):
            return jsonify({
                'status': 'error',
                'message': 'The requested method is not allowed for this endpoint'
            }), 405

        @self.app.errorhandler(500)
        def internal_error(error):
            self.logger.error(f"Internal server error: {error}")
            return jsonify({
                'status': 'error',
                'message': 'An unexpected error occurred'
            }), 500

    def _setup_response_headers(self):
        """Set up security and CORS headers for all responses."""

        @self.app.after_request
        def add_response_headers(response):
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
            response.headers['X-Content-Type-Options'] = 'nosniff'
            response.headers['X-Frame-Options'] = 'DENY'
            response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'

            if self.config.enable_cors:
                response.headers['Access-Control-Allow-Origin'] = '*'
                response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
                response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'

            response.headers.pop('Server', None)
            return response

    def create_server(self, host: Optional[str] = None, port: Optional[int] = None) -> MTLSServer:
        """Bind the mTLS listener. Raises OSError or SystemExit if the port cannot be bound."""
        host = host or self.config.host
        port = self.config.api_port if port is None else port
        policy = self.config.transport_policy

        ssl_context = self.security_service.setup_mtls_context(policy)
        self._server = MTLSServer(
            host,
            port,
            self.app,
            ssl_context=ssl_context,
            event_reporter=self.event_reporter,
            handshake_timeout=policy.handshake_timeout_seconds
        )
        return self._server

    def run(self, host: Optional[str] = None, port: Optional[int] = None):
        """Run the application with HTTPS and mTLS until stopped."""
        server = self.create_server(host, port)
        bound_host, bound_port = server.server_address[:2]
        self.logger.info(f"mTLS server listening on https://{bound_host}:{bound_port}")
        server.serve_forever()

    def stop(self):
        """Stop a running listener. Must not be called from the serving thread."""
        if self._server is not None:
            self._server.shutdown()

    def get_app(self) -> Flask:
        """Get the Flask application instance."""
        return self.app
