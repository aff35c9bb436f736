import argparse
import logging
import sys
from unittest import mock

import pytest

from remindsync.cli import rscli
from remindsync.cli.rscli import RemindSyncCli
from remindsync.reminders.model.frequency import Custom, Weekly
from remindsync.reminders.model.remote import MemoryRemoteStore


@pytest.fixture(autouse=True)
def file_handlers():
    yield
    logger = logging.getLogger()
    for handler in [h for h in logger.handlers if isinstance(h, logging.FileHandler)]:
        logger.removeHandler(handler)
        handler.close()


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, 'argv', ['remindsync', *argv])
    rscli.main()


def read_status(capsys) -> dict:
    return dict(line.split(maxsplit=1) for line in capsys.readouterr().out.splitlines() if line.strip())


class TestRemindSyncCli:

    def test_add_and_list(self, monkeypatch, capsys):
        run_cli(monkeypatch, 'add', 'Stretch', '--category', 'health', '--frequency', 'daily', '--time', '10:30')
        assert 'Stretch' in capsys.readouterr().out

        run_cli(monkeypatch, 'list', '--status', 'active')
        out = capsys.readouterr().out
        assert 'Stretch' in out
        assert 'health' in out

        run_cli(monkeypatch, 'list', '--status', 'paused')
        assert 'Stretch' not in capsys.readouterr().out

    def test_add_invalid_time(self, monkeypatch):
        with pytest.raises(SystemExit) as raised:
            run_cli(monkeypatch, 'add', 'Stretch', '--frequency', 'daily', '--time', '25:99')
        assert raised.value.code == 5

    def test_add_past_once(self, monkeypatch):
        with pytest.raises(SystemExit) as raised:
            run_cli(monkeypatch, 'add', 'Stretch', '--date', '2001-01-01')
        assert raised.value.code == 5

    def test_pause_and_resume(self, monkeypatch, capsys):
        run_cli(monkeypatch, 'add', 'Stretch', '--frequency', 'daily')
        run_cli(monkeypatch, 'pause', '1')
        assert 'paused' in capsys.readouterr().out

        with pytest.raises(SystemExit) as raised:
            run_cli(monkeypatch, 'pause', '1')
        assert raised.value.code == 7

        run_cli(monkeypatch, 'resume', '1')
        assert 'active' in capsys.readouterr().out

    def test_missing_reminder(self, monkeypatch):
        with pytest.raises(SystemExit) as raised:
            run_cli(monkeypatch, 'delete', '42')
        assert raised.value.code == 7

    def test_sync_keeps_queue_without_remote(self, monkeypatch, capsys):
        run_cli(monkeypatch, 'add', 'Stretch', '--frequency', 'hourly')
        capsys.readouterr()

        run_cli(monkeypatch, 'status')
        status = read_status(capsys)
        assert status['pending_inserts'] == '1'
        assert status['needs_sync'] == 'True'

        with pytest.raises(SystemExit) as raised:
            run_cli(monkeypatch, 'sync')
        assert raised.value.code == 8
        capsys.readouterr()

        run_cli(monkeypatch, 'status')
        status = read_status(capsys)
        assert status['pending_inserts'] == '1'
        assert status['total'] == '1'

    def test_sync_with_remote(self, monkeypatch, capsys):
        remote = MemoryRemoteStore()
        monkeypatch.setattr(RemindSyncCli, 'build_remote', lambda cli: remote)
        run_cli(monkeypatch, 'add', 'Stretch', '--frequency', 'hourly')
        capsys.readouterr()

        run_cli(monkeypatch, 'sync')
        assert 'Pushed 1, failed 0' in capsys.readouterr().out
        assert remote.records[('guest', 1)]['title'] == 'Stretch'

        run_cli(monkeypatch, 'status')
        status = read_status(capsys)
        assert status['total'] == '0'
        assert status['needs_sync'] == 'False'

    def test_missing_config(self, monkeypatch, tmp_path):
        with pytest.raises(SystemExit) as raised:
            run_cli(monkeypatch, '--config', str(tmp_path / 'nowhere.json'), 'list')
        assert raised.value.code == 2

    def test_invalid_config(self, monkeypatch, tmp_path):
        conf_file = tmp_path / 'conf.json'
        conf_file.write_text('{"poll_interval": ')
        with pytest.raises(SystemExit) as raised:
            run_cli(monkeypatch, '--config', str(conf_file), 'list')
        assert raised.value.code == 20

    def test_caldav_not_configured(self, monkeypatch):
        with pytest.raises(SystemExit) as raised:
            run_cli(monkeypatch, '--remote-backend', 'caldav', 'list')
        assert raised.value.code == 4

        with pytest.raises(SystemExit) as raised:
            run_cli(monkeypatch, '--remote-backend', 'caldav', '--caldav-url', 'https://dav.example.com', 'list')
        assert raised.value.code == 4

    @mock.patch('keyring.get_password', return_value=None)
    def test_caldav_without_password(self, mock_get, monkeypatch):
        with pytest.raises(SystemExit) as raised:
            run_cli(monkeypatch, '--remote-backend', 'caldav', '--caldav-url', 'https://dav.example.com',
                    '--caldav-username', 'alice', 'list')
        assert raised.value.code == 3

    def test_parse_frequency(self):
        args = argparse.Namespace(frequency='weekly', days='1, 3,5', date=None, day_of_month=1, minutes=1,
                                  interval=1, unit='minutes')
        assert RemindSyncCli.parse_frequency(args) == Weekly([1, 3, 5])

        args.frequency = 'custom'
        args.interval = 2
        args.unit = 'hours'
        assert RemindSyncCli.parse_frequency(args) == Custom(2, 'hours')
