"""
Services package for the mTLS server.
"""

from .config_service import ConfigService
from .logging_service import LoggingService, ConnectionEventReporter

__all__ = [
    'ConfigService',
    'LoggingService',
    'ConnectionEventReporter'
]
