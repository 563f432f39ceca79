"""
Authentication middleware for mTLS client certificate validation.
"""
import logging
from functools import wraps
from flask import request, g, jsonify

from .models import ConnectionAuthorization
from .security_service import SecurityService


REJECTION_MESSAGE = 'Client certificate verification failed'


class MTLSAuthMiddleware:
    """WSGI middleware deriving a fresh authorization outcome for every request."""

    def __init__(self, app, security_service: SecurityService, event_reporter=None):
        """Initialize the authentication middleware."""
        self.app = app
        self.security_service = security_service
        self.event_reporter = event_reporter
        self.logger = logging.getLogger(__name__)

        # Wrap the Flask app
        self.wsgi_app = app.wsgi_app
        app.wsgi_app = self

    def __call__(self, environ, start_response):
        """WSGI application call."""
        authorization = self.authorize(environ)
        environ['mtls.authorization'] = authorization

        if self.event_reporter is not None:
            self.event_reporter.report_authorization(
                authorization,
                client_address=environ.get('REMOTE_ADDR'),
                protocol=environ.get('SSL_PROTOCOL'),
                cipher=environ.get('SSL_CIPHER')
            )

        return self.wsgi_app(environ, start_response)

    def authorize(self, environ) -> ConnectionAuthorization:
        """Decide whether the peer behind this request is authorized."""
        client_cert = environ.get('SSL_CLIENT_CERT')
        if not client_cert:
            return ConnectionAuthorization.rejected("No client certificate presented")

        intermediates = []
        index = 0
        while environ.get(f'SSL_CLIENT_CERT_CHAIN_{index}'):
            intermediates.append(environ[f'SSL_CLIENT_CERT_CHAIN_{index}'])
            index += 1

        return self.security_service.validate_client_certificate(
            client_cert,
            intermediates=intermediates,
            transport_verified=environ.get('SSL_CLIENT_VERIFY') == 'SUCCESS'
        )


def rejection_response():
    return jsonify({
        'status': 'error',
        'message': REJECTION_MESSAGE
    }), 401


def setup_mtls_authentication(app, security_service: SecurityService, event_reporter=None):
    """Set up mTLS authentication for Flask app."""
    MTLSAuthMiddleware(app, security_service, event_reporter)

    @app.before_request
    def load_authorization():
        """Expose the request's authorization outcome on ``g``."""
        authorization = request.environ.get('mtls.authorization')
        if authorization is None:
            authorization = ConnectionAuthorization.rejected("Request did not pass the mTLS middleware")

        g.authorization = authorization
        g.client_id = authorization.client_id if authorization.authorized else None

    return app


def require_client_certificate(f):
    """Decorator answering 401 before the view runs unless the client is authorized."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        authorization = getattr(g, 'authorization', None)
        if authorization is None or not authorization.authorized:
            return rejection_response()
        return f(*args, **kwargs)
    return decorated_function
