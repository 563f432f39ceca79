"""
Logging and connection event reporting for the mTLS server.
"""
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Any, Deque, Optional, List
from collections import deque
from dataclasses import dataclass, asdict
import threading

from ..security.models import ConnectionAuthorization, HandshakeOutcome


@dataclass
class LogEntry:
    """Structured log entry for JSON logging."""
    timestamp: str
    level: str
    logger_name: str
    message: str
    module: str
    function: str
    line_number: int
    thread_id: int
    process_id: int
    extra_data: Optional[Dict[str, Any]] = None
    exception_info: Optional[Dict[str, Any]] = None


@dataclass
class ErrorMetric:
    """Error tracking metric data structure."""
    error_type: str
    error_message: str
    timestamp: str
    stack_trace: Optional[str] = None
    extra_data: Optional[Dict[str, Any]] = None


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created).isoformat(),
            level=record.levelname,
            logger_name=record.name,
            message=record.getMessage(),
            module=record.module,
            function=record.funcName,
            line_number=record.lineno,
            thread_id=record.thread,
            process_id=record.process,
            extra_data=getattr(record, 'extra_data', None)
        )

        if record.exc_info:
            log_entry.exception_info = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        return json.dumps(asdict(log_entry), default=str)


class ErrorTracker:
    """Error tracking and analysis."""

    def __init__(self, max_errors: int = 1000, max_age_hours: int = 168):
        self.errors: Deque[ErrorMetric] = deque(maxlen=max_errors)
        self.max_age_hours = max_age_hours
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def track_error(self, error: BaseException, extra_data: Optional[Dict[str, Any]] = None):
        """Track an error occurrence."""
        error_metric = ErrorMetric(
            error_type=type(error).__name__,
            error_message=str(error),
            timestamp=datetime.now().isoformat(),
            stack_trace=''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            extra_data=extra_data
        )

        self.cleanup_old_errors(self.max_age_hours)
        with self.lock:
            self.errors.append(error_metric)

        self.logger.error(
            f"Error tracked: {error_metric.error_type}",
            extra={
                'extra_data': {
                    'error_type': error_metric.error_type,
                    'error_message': error_metric.error_message,
                    **(extra_data if extra_data else {})
                }
            },
            exc_info=(type(error), error, error.__traceback__)
        )

    def get_errors(self, error_type: Optional[str] = None,
                   since: Optional[datetime] = None) -> List[ErrorMetric]:
        """Get error metrics with optional filtering."""
        with self.lock:
            filtered_errors = list(self.errors)

        if error_type:
            filtered_errors = [e for e in filtered_errors if e.error_type == error_type]

        if since:
            since_iso = since.isoformat()
            filtered_errors = [e for e in filtered_errors if e.timestamp >= since_iso]

        return filtered_errors

    def get_error_summary(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Get error summary statistics."""
        errors = self.get_errors(since=since)

        if not errors:
            return {'total_errors': 0, 'error_types': {}}

        error_types = {}
        for error in errors:
            error_types[error.error_type] = error_types.get(error.error_type, 0) + 1

        return {
            'total_errors': len(errors),
            'error_types': error_types,
            'most_common_error': max(error_types.items(), key=lambda x: x[1])[0]
        }

    def cleanup_old_errors(self, max_age_hours: int = 168):  # 7 days default
        """Remove errors older than specified hours."""
        cutoff_time = datetime.now() - timedelta(hours=max_age_hours)
        cutoff_iso = cutoff_time.isoformat()

        with self.lock:
            kept = [e for e in self.errors if e.timestamp >= cutoff_iso]
            self.errors = deque(kept, maxlen=self.errors.maxlen)


class ConnectionEventReporter:
    """Single consumer of handshake and authorization events."""

    def __init__(self, error_tracker: Optional[ErrorTracker] = None):
        self.error_tracker = error_tracker or ErrorTracker()
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)
        self._counters = {
            'handshakes_succeeded': 0,
            'handshakes_failed': 0,
            'requests_authorized': 0,
            'requests_rejected': 0,
            'unexpected_errors': 0
        }

    def _increment(self, counter: str):
        with self.lock:
            self._counters[counter] += 1

    def report_handshake(self, outcome: HandshakeOutcome):
        """Log a completed or failed TLS handshake."""
        extra_data = {
            'event': 'tls_handshake',
            'client_address': outcome.client_address,
            'success': outcome.success,
            'protocol': outcome.protocol,
            'cipher': outcome.cipher,
            'peer_verified': outcome.peer_verified,
            'duration_ms': round(outcome.duration_ms, 2)
        }

        if outcome.success:
            self._increment('handshakes_succeeded')
            self.logger.info(
                f"Secure connection established with {outcome.client_address} "
                f"(protocol={outcome.protocol}, cipher={outcome.cipher})",
                extra={'extra_data': extra_data}
            )
        else:
            self._increment('handshakes_failed')
            extra_data['error_message'] = outcome.error_message
            self.logger.warning(
                f"TLS client error from {outcome.client_address}: {outcome.error_message}",
                extra={'extra_data': extra_data}
            )

    def report_authorization(self, authorization: ConnectionAuthorization,
                             client_address: Optional[str] = None,
                             protocol: Optional[str] = None,
                             cipher: Optional[str] = None):
        """Log the authorization outcome of a single request."""
        extra_data = {
            'event': 'client_authorization',
            'client_address': client_address,
            'authorized': authorization.authorized,
            'client_id': authorization.client_id,
            'fingerprint': authorization.fingerprint,
            'protocol': protocol,
            'cipher': cipher
        }

        if authorization.authorized:
            self._increment('requests_authorized')
            self.logger.info(
                f"Client successfully authenticated: {authorization.client_id}",
                extra={'extra_data': extra_data}
            )
        else:
            self._increment('requests_rejected')
            extra_data['error_message'] = authorization.error_message
            self.logger.warning(
                f"Client authentication failed: {authorization.error_message}",
                extra={'extra_data': extra_data}
            )

    def report_unexpected_error(self, error: BaseException, client_address: Optional[str] = None):
        """Record a fault raised while serving one connection."""
        self._increment('unexpected_errors')
        self.error_tracker.track_error(error, {'client_address': client_address})

    def get_summary(self) -> Dict[str, int]:
        """Get a snapshot of the event counters."""
        with self.lock:
            return dict(self._counters)


class LoggingService:
    """Logging configuration for the mTLS server."""

    def __init__(self, config):
        """Initialize logging service with configuration."""
        self.config = config
        self.error_tracker = ErrorTracker()
        self.connection_reporter = ConnectionEventReporter(self.error_tracker)
        self.logger = logging.getLogger(__name__)
        self._setup_logging()
        self.logger.info("Logging service initialized")

    def _setup_logging(self):
        """Setup console, JSON file and error file handlers."""
        log_dir = Path(self.config.log_file_path).parent
        log_dir.mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        root_logger.setLevel(log_level)

        json_formatter = JSONFormatter()
        console_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        file_handler = logging.handlers.RotatingFileHandler(
            filename=self.config.log_file_path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(json_formatter)
        file_handler.setLevel(log_level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(console_formatter)
        console_handler.setLevel(log_level)

        error_log_path = str(Path(self.config.log_file_path).with_suffix('.errors.log'))
        error_handler = logging.handlers.RotatingFileHandler(
            filename=error_log_path,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
            encoding='utf-8'
        )
        error_handler.setFormatter(json_formatter)
        error_handler.setLevel(logging.ERROR)

        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)
        root_logger.addHandler(error_handler)

        self._setup_log_retention()

    def _setup_log_retention(self):
        """Remove log files older than 30 days."""
        log_dir = Path(self.config.log_file_path).parent
        cutoff_time = datetime.now() - timedelta(days=30)

        for log_file in log_dir.glob("*.log*"):
            try:
                if log_file.stat().st_mtime < cutoff_time.timestamp():
                    log_file.unlink()
                    self.logger.info(f"Cleaned up old log file: {log_file}")
            except OSError as e:
                self.logger.warning(f"Failed to clean up log file {log_file}: {e}")

    def log_with_context(self, level: str, message: str, **context):
        """Log message with additional context data."""
        logger = logging.getLogger('mtls_gate')
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message, extra={'extra_data': context})

    def track_error(self, error: BaseException, extra_data: Optional[Dict[str, Any]] = None):
        """Track an error occurrence."""
        self.error_tracker.track_error(error, extra_data)

    def get_error_summary(self, since_hours: int = 24) -> Dict[str, Any]:
        """Get error summary for the specified time period."""
        since = datetime.now() - timedelta(hours=since_hours)
        return self.error_tracker.get_error_summary(since=since)

    def close(self):
        """Flush and detach the handlers installed by this service."""
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            handler.close()
            root_logger.removeHandler(handler)
