import datetime
from unittest import mock

from remindsync import settings
from remindsync.errors import AuthenticationError
from remindsync.session import GuestSession, KeyringSession, TokenSession

UTC = datetime.timezone.utc
NOW = datetime.datetime(2026, 3, 11, 10, 0, tzinfo=UTC)


class TestGuestSession:

    def test_always_valid(self):
        session = GuestSession()
        assert session.is_valid()
        assert session.refresh()
        assert session.current_user() == 'guest'


class TestTokenSession:

    def test_validity(self, clock):
        assert TokenSession('alice', 'token', None, clock=clock).is_valid()
        assert TokenSession('alice', 'token', NOW + datetime.timedelta(seconds=1), clock=clock).is_valid()
        assert not TokenSession('alice', 'token', NOW, clock=clock).is_valid()
        assert not TokenSession('alice', None, None, clock=clock).is_valid()

    def test_refresh(self, clock):
        refresher = mock.Mock(return_value=('new-token', NOW + datetime.timedelta(hours=1)))
        session = TokenSession('alice', 'old-token', NOW - datetime.timedelta(minutes=5), refresher, clock)
        assert not session.is_valid()
        assert session.refresh()
        assert session.token == 'new-token'
        assert session.is_valid()
        refresher.assert_called_once_with('old-token')

    def test_refresh_without_refresher(self, clock):
        session = TokenSession('alice', 'token', NOW - datetime.timedelta(minutes=5), clock=clock)
        assert not session.refresh()

    def test_refresh_rejected(self, clock):
        refresher = mock.Mock(side_effect=AuthenticationError('refresh token revoked'))
        session = TokenSession('alice', 'token', NOW - datetime.timedelta(minutes=5), refresher, clock)
        assert not session.refresh()
        assert session.token == 'token'


class TestKeyringSession:

    @mock.patch('keyring.set_password')
    @mock.patch('keyring.get_password', return_value='stored-token')
    def test_token_from_keyring(self, mock_get, mock_set, clock):
        refresher = mock.Mock(return_value=('new-token', NOW + datetime.timedelta(hours=1)))
        session = KeyringSession('alice', NOW - datetime.timedelta(minutes=1), refresher, clock)
        mock_get.assert_called_once_with(settings.KEYRING_SERVICE, settings.KEYRING_SESSION_TOKEN)
        assert session.token == 'stored-token'
        assert session.current_user() == 'alice'

        assert session.refresh()
        mock_set.assert_called_once_with(settings.KEYRING_SERVICE, settings.KEYRING_SESSION_TOKEN, 'new-token')

    @mock.patch('keyring.get_password', return_value=None)
    def test_no_token_in_keyring(self, mock_get, clock):
        session = KeyringSession('alice', clock=clock)
        assert not session.is_valid()
        assert not session.refresh()
