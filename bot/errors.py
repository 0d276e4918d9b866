from __future__ import annotations
from typing import Optional


class MonitorError(RuntimeError):
    """Base class for Twitch monitor failures; ``code`` is machine readable."""

    code = 'monitor_error'

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class MonitorValidationError(MonitorError):
    code = 'invalid_input'


class AlreadyMonitored(MonitorValidationError):
    code = 'already_monitored'


class NotFound(MonitorValidationError):
    code = 'not_found'


class TransientFetchError(MonitorError):
    code = 'fetch_failed'


class PersistenceError(MonitorError):
    code = 'persistence_failed'


class NotifierError(MonitorError):
    code = 'notify_failed'
