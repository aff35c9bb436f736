import json

import pytest

from remindsync import settings
from remindsync.errors import ValidationError


class TestSettings:

    def test_defaults(self, tmp_path):
        result = settings.load_settings(tmp_path / 'missing.json')
        assert result == settings.DEFAULT_SETTINGS
        assert result is not settings.DEFAULT_SETTINGS

    def test_default_conf_file(self, data_dir):
        assert settings.default_conf_file() == data_dir / 'conf.json'

    def test_conf_file(self, tmp_path):
        conf_file = tmp_path / 'conf.json'
        conf_file.write_text(json.dumps({'remote_backend': 'caldav', 'caldav_url': 'https://dav.example.com',
                                         'poll_interval': 10, 'not_a_setting': True}))
        result = settings.load_settings(conf_file)
        assert result['remote_backend'] == 'caldav'
        assert result['caldav_url'] == 'https://dav.example.com'
        assert result['poll_interval'] == 10
        assert 'not_a_setting' not in result

    def test_invalid_conf_file(self, tmp_path):
        conf_file = tmp_path / 'conf.json'
        conf_file.write_text('{"remote_backend": ')
        with pytest.raises(ValidationError):
            settings.load_settings(conf_file)

        conf_file.write_text('["caldav"]')
        with pytest.raises(ValidationError):
            settings.load_settings(conf_file)

    def test_environment(self, tmp_path, monkeypatch):
        conf_file = tmp_path / 'conf.json'
        conf_file.write_text(json.dumps({'poll_interval': 10, 'user_id': 'from-file'}))
        monkeypatch.setenv('REMINDSYNC_POLL_INTERVAL', '45')
        monkeypatch.setenv('REMINDSYNC_AUTOSYNC', 'true')
        monkeypatch.setenv('REMINDSYNC_RETRY_BASE_DELAY', '0.5')
        result = settings.load_settings(conf_file)
        assert result['poll_interval'] == 45
        assert result['autosync'] is True
        assert result['retry_base_delay'] == 0.5
        assert result['user_id'] == 'from-file'

    def test_invalid_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv('REMINDSYNC_POLL_INTERVAL', 'often')
        with pytest.raises(ValidationError):
            settings.load_settings(tmp_path / 'missing.json')

    def test_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv('REMINDSYNC_TIMEZONE', 'Europe/Rome')
        result = settings.load_settings(tmp_path / 'missing.json',
                                        {'timezone': 'Europe/Malta', 'log_level': None, 'unknown': 1})
        assert result['timezone'] == 'Europe/Malta'
        assert result['log_level'] == 'info'
        assert 'unknown' not in result

    def test_unknown_backend(self, tmp_path):
        with pytest.raises(ValidationError):
            settings.load_settings(tmp_path / 'missing.json', {'remote_backend': 'ftp'})
