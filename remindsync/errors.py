"""
Contains the error taxonomy shared by every part of RemindSync.

Each error carries an :py:class:`ErrorKind`, which decides whether the retry policy may retry the failed operation and
which generic message is shown to the user.
"""

from __future__ import annotations

import enum
import logging

from caldav.lib import error as caldav_error


class ErrorKind(enum.Enum):
    """
    The kind of failure an operation ran into.
    """

    VALIDATION = 'validation'
    AUTHENTICATION = 'authentication'
    NETWORK = 'network'
    TIMEOUT = 'timeout'
    PERMISSION = 'permission'
    CONFLICT = 'conflict'
    SERVER = 'server'
    NOT_FOUND = 'not_found'
    UNKNOWN = 'unknown'


#: Generic messages shown to the user for each kind of error.
USER_MESSAGES = {
    ErrorKind.VALIDATION: 'The reminder details are not valid',
    ErrorKind.AUTHENTICATION: 'Authentication required',
    ErrorKind.NETWORK: 'Network connection issue',
    ErrorKind.TIMEOUT: 'Operation timed out',
    ErrorKind.PERMISSION: 'Permission denied',
    ErrorKind.CONFLICT: 'The reminder was changed elsewhere',
    ErrorKind.SERVER: 'The server could not complete the request',
    ErrorKind.NOT_FOUND: 'The reminder could not be found',
    ErrorKind.UNKNOWN: 'An unexpected error occurred',
}


class ReminderError(Exception):
    """
    Base class for all RemindSync errors.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str = '', reminder_id: int | None = None):
        super().__init__(message)
        self.message: str = message
        self.reminder_id: int | None = reminder_id

    @property
    def retryable(self) -> bool:
        """
        True if the operation that raised this error may be attempted again.
        """
        return self.kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT)

    @property
    def user_message(self) -> str:
        """
        A generic, human-readable description of this error.
        """
        return USER_MESSAGES[self.kind]

    def __str__(self):
        return self.message or self.user_message


class ValidationError(ReminderError):
    """Bad frequency, time or reminder input. Never retried."""
    kind = ErrorKind.VALIDATION


class InvalidTimeError(ValidationError):
    """The requested occurrence lies in the past (or inside the minimum lead time)."""


class InvalidTransitionError(ValidationError):
    """The requested status change is not allowed from the reminder's current status."""


class AuthenticationError(ReminderError):
    """
    The session is invalid or expired. A transient authentication failure is retried once after the session has been
    refreshed; a permanent one fails fast.
    """
    kind = ErrorKind.AUTHENTICATION

    def __init__(self, message: str = '', reminder_id: int | None = None, transient: bool = False):
        super().__init__(message, reminder_id)
        self.transient: bool = transient

    @property
    def retryable(self) -> bool:
        return self.transient


class NetworkError(ReminderError):
    kind = ErrorKind.NETWORK


class RemoteTimeoutError(ReminderError):
    kind = ErrorKind.TIMEOUT


class NotificationPermissionError(ReminderError):
    """Notification or background permission was denied. Handled by falling back to foreground polling."""
    kind = ErrorKind.PERMISSION


class ConflictError(ReminderError):
    """Local and remote copies of a reminder disagree. Resolved by the configured strategy, never surfaced."""
    kind = ErrorKind.CONFLICT


class ServerError(ReminderError):
    kind = ErrorKind.SERVER


class NotFoundError(ReminderError):
    kind = ErrorKind.NOT_FOUND


class UnknownError(ReminderError):
    kind = ErrorKind.UNKNOWN


_ERRORS_BY_KIND = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.AUTHENTICATION: AuthenticationError,
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.TIMEOUT: RemoteTimeoutError,
    ErrorKind.PERMISSION: NotificationPermissionError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.SERVER: ServerError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.UNKNOWN: UnknownError,
}


def error_for(kind: ErrorKind, message: str = '', reminder_id: int | None = None) -> ReminderError:
    """
    Build the error class matching ``kind``.

    :param kind: the kind of error.
    :param message: the technical message.
    :param reminder_id: the reminder concerned, if any.

    :return: a :py:class:`ReminderError` instance.
    """
    return _ERRORS_BY_KIND[kind](message, reminder_id)


def classify(exc: BaseException, reminder_id: int | None = None) -> ReminderError:
    """
    Translate a foreign exception (CalDAV, socket, HTTP client) into the RemindSync error taxonomy.

    :param exc: the exception to translate.
    :param reminder_id: the reminder concerned, if any.

    :return: the matching :py:class:`ReminderError`. ``exc`` itself is returned if it already is one.
    """
    if isinstance(exc, ReminderError):
        return exc
    message = '{}: {}'.format(type(exc).__name__, exc)
    if isinstance(exc, caldav_error.AuthorizationError):
        return AuthenticationError(message, reminder_id, transient=True)
    if isinstance(exc, caldav_error.NotFoundError):
        return NotFoundError(message, reminder_id)
    if isinstance(exc, TimeoutError) or 'timeout' in type(exc).__name__.lower():
        return RemoteTimeoutError(message, reminder_id)
    if isinstance(exc, OSError) or 'connection' in type(exc).__name__.lower():
        return NetworkError(message, reminder_id)
    if isinstance(exc, caldav_error.DAVError):
        return ServerError(message, reminder_id)
    if isinstance(exc, ValueError):
        return ValidationError(message, reminder_id)
    return UnknownError(message, reminder_id)


_SEVERITY = {
    ErrorKind.VALIDATION: logging.WARNING,
    ErrorKind.PERMISSION: logging.WARNING,
    ErrorKind.CONFLICT: logging.INFO,
    ErrorKind.NOT_FOUND: logging.WARNING,
    ErrorKind.UNKNOWN: logging.CRITICAL,
}


def log_error(err: ReminderError, operation: str) -> str:
    """
    Log an error with its severity and context, then translate it into a user-facing message.

    :param err: the error to log.
    :param operation: the name of the operation which failed.

    :return: the user-facing message.
    """
    level = _SEVERITY.get(err.kind, logging.ERROR)
    logging.log(level, '{operation} failed [{kind}{reminder}]: {message}'.format(
        operation=operation,
        kind=err.kind.value,
        reminder=', reminder {}'.format(err.reminder_id) if err.reminder_id is not None else '',
        message=err.message or err.user_message))
    return '{} failed: {}'.format(operation, err.user_message)
