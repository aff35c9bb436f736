import logging
import socket

import pytest
from caldav.lib import error as caldav_error

from remindsync import errors
from remindsync.errors import ErrorKind


class TestErrors:

    @pytest.mark.parametrize('exc, kind', [
        (ConnectionRefusedError('refused'), ErrorKind.NETWORK),
        (socket.gaierror('no such host'), ErrorKind.NETWORK),
        (TimeoutError('timed out'), ErrorKind.TIMEOUT),
        (socket.timeout('timed out'), ErrorKind.TIMEOUT),
        (caldav_error.AuthorizationError('401'), ErrorKind.AUTHENTICATION),
        (caldav_error.NotFoundError('404'), ErrorKind.NOT_FOUND),
        (caldav_error.PutError('500'), ErrorKind.SERVER),
        (ValueError('bad'), ErrorKind.VALIDATION),
        (RuntimeError('boom'), ErrorKind.UNKNOWN),
    ])
    def test_classify(self, exc, kind):
        err = errors.classify(exc, 7)
        assert err.kind == kind
        assert err.reminder_id == 7

    def test_classify_keeps_reminder_errors(self):
        err = errors.NetworkError('down')
        assert errors.classify(err) is err

    def test_retryable(self):
        assert errors.NetworkError().retryable
        assert errors.RemoteTimeoutError().retryable
        assert errors.AuthenticationError(transient=True).retryable
        assert not errors.AuthenticationError().retryable
        assert not errors.ValidationError().retryable
        assert not errors.ServerError().retryable
        assert errors.classify(caldav_error.AuthorizationError('401')).retryable

    def test_user_message(self):
        assert errors.NetworkError('socket closed').user_message == 'Network connection issue'
        assert errors.AuthenticationError().user_message == 'Authentication required'
        assert errors.RemoteTimeoutError().user_message == 'Operation timed out'
        assert str(errors.NetworkError()) == 'Network connection issue'
        assert str(errors.NetworkError('socket closed')) == 'socket closed'

    def test_error_for(self):
        err = errors.error_for(ErrorKind.CONFLICT, 'changed elsewhere', 3)
        assert isinstance(err, errors.ConflictError)
        assert err.reminder_id == 3

    def test_subclasses(self):
        assert issubclass(errors.InvalidTimeError, errors.ValidationError)
        assert issubclass(errors.InvalidTransitionError, errors.ValidationError)

    def test_log_error(self, caplog):
        caplog.set_level(logging.DEBUG)
        message = errors.log_error(errors.NetworkError('socket closed', 4), 'Sync')
        assert message == 'Sync failed: Network connection issue'
        assert caplog.records[-1].levelno == logging.ERROR
        assert caplog.records[-1].getMessage() == 'Sync failed [network, reminder 4]: socket closed'

        errors.log_error(errors.ValidationError(), 'Create reminder')
        assert caplog.records[-1].levelno == logging.WARNING
        assert caplog.records[-1].getMessage() == ('Create reminder failed [validation]: '
                                                   'The reminder details are not valid')

        errors.log_error(errors.UnknownError('boom'), 'Sync')
        assert caplog.records[-1].levelno == logging.CRITICAL
