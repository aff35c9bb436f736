import datetime
import json
import sqlite3
from contextlib import closing

import pytest

from remindsync.errors import ValidationError
from remindsync.reminders.model.frequency import Daily, Once, Weekly
from remindsync.reminders.model.localstore import LocalStore
from remindsync.reminders.model.reminder import Reminder, ReminderStatus
from remindsync.reminders.model.syncqueue import SyncOperation

UTC = datetime.timezone.utc
NOW = datetime.datetime(2026, 3, 11, 10, 0, tzinfo=UTC)


def make_reminder(title='Water the plants', **kwargs) -> Reminder:
    kwargs.setdefault('frequency', Daily())
    kwargs.setdefault('time_of_day', datetime.time(9, 0))
    return Reminder(None, title, 'home', **kwargs)


def operations(store: LocalStore):
    success, entries = store.pending_entries(include_waiting=True)
    assert success
    return [(e.reminder_id, e.operation) for e in entries]


class TestLocalStore:

    def test_seed(self, store):
        success, _ = store.seed()
        assert success
        success, data = store.seed()
        assert success
        assert data == 'Tables already created'

    def test_add_reminder(self, store):
        success, reminder = store.add_reminder(make_reminder())
        assert success
        assert reminder.id == 1
        assert reminder.created_at == NOW
        assert reminder.updated_at == NOW
        assert operations(store) == [(1, SyncOperation.INSERT)]

        success, entries = store.pending_entries()
        assert entries[0].payload['title'] == 'Water the plants'
        assert entries[0].payload['frequency'] == {'type': 'daily'}

    def test_row_round_trip(self, store):
        reminder = make_reminder(frequency=Weekly(frozenset({1, 3})), description='Kitchen and balcony',
                                 next_occurrence='Tomorrow at 9:00 AM',
                                 next_occurrence_instant=NOW + datetime.timedelta(days=1), repeat_limit=3,
                                 notifications_enabled=False, audio_ref='chime')
        success, stored = store.add_reminder(reminder)
        success, loaded = store.get_reminder(stored.id)
        assert success
        assert loaded == stored
        assert loaded.frequency == Weekly(frozenset({1, 3}))
        assert loaded.notifications_enabled is False

    def test_get_reminder_missing(self, store):
        success, data = store.get_reminder(42)
        assert not success
        assert data == 'Reminder 42 not found'

    def test_get_reminders_by_status(self, store):
        store.add_reminder(make_reminder('Active one'))
        store.add_reminder(make_reminder('Paused one', status=ReminderStatus.PAUSED))
        success, reminders = store.get_reminders()
        assert [r.title for r in reminders] == ['Active one', 'Paused one']
        success, reminders = store.get_reminders([ReminderStatus.PAUSED])
        assert [r.title for r in reminders] == ['Paused one']

    def test_update_unflushed_insert_stays_insert(self, store, clock):
        success, reminder = store.add_reminder(make_reminder())
        clock.advance(minutes=1)
        reminder.title = 'Water the cactus'
        success, updated = store.update_reminder(reminder)
        assert success
        assert updated.updated_at == NOW + datetime.timedelta(minutes=1)
        assert operations(store) == [(1, SyncOperation.INSERT)]
        success, entries = store.pending_entries()
        assert entries[0].payload['title'] == 'Water the cactus'

    def test_update_after_ack(self, store):
        success, reminder = store.add_reminder(make_reminder())
        success, entries = store.pending_entries()
        store.acknowledge(entries[0])
        reminder.title = 'Water the cactus'
        store.update_reminder(reminder)
        assert operations(store) == [(1, SyncOperation.UPDATE)]

    def test_update_missing(self, store):
        reminder = make_reminder()
        reminder.id = 99
        success, data = store.update_reminder(reminder)
        assert not success
        assert operations(store) == []

    def test_delete_collapses_pending(self, store):
        success, reminder = store.add_reminder(make_reminder())
        reminder.title = 'Renamed'
        store.update_reminder(reminder)
        success, _ = store.delete_reminder(reminder.id)
        assert success
        assert operations(store) == [(1, SyncOperation.DELETE)]
        success, entries = store.pending_entries()
        assert entries[0].payload == {'id': 1}
        success, _ = store.get_reminder(reminder.id)
        assert not success

    def test_delete_missing(self, store):
        success, data = store.delete_reminder(7)
        assert not success
        assert data == 'Reminder 7 not found'

    def test_acknowledge_keeps_superseding_entry(self, store):
        success, reminder = store.add_reminder(make_reminder())
        success, in_flight = store.pending_entries()
        reminder.title = 'Changed while syncing'
        store.update_reminder(reminder)
        store.acknowledge(in_flight[0])
        success, entries = store.pending_entries()
        assert len(entries) == 1
        assert entries[0].payload['title'] == 'Changed while syncing'

    def test_queue_fifo(self, store, clock):
        store.add_reminder(make_reminder('First'))
        clock.advance(seconds=5)
        store.add_reminder(make_reminder('Second'))
        assert [rid for rid, _ in operations(store)] == [1, 2]

    def test_mark_failed_backoff(self, store, clock):
        store.add_reminder(make_reminder())
        success, entries = store.pending_entries()
        store.mark_failed(entries[0], 'Network connection issue')

        success, due = store.pending_entries()
        assert due == []
        success, waiting = store.pending_entries(include_waiting=True)
        assert waiting[0].retry_count == 1
        assert waiting[0].last_error == 'Network connection issue'
        assert waiting[0].next_retry_at == NOW + datetime.timedelta(minutes=1)

        clock.advance(minutes=1)
        success, due = store.pending_entries()
        store.mark_failed(due[0], 'Network connection issue')
        success, waiting = store.pending_entries(include_waiting=True)
        assert waiting[0].next_retry_at == clock() + datetime.timedelta(minutes=2)

    def test_exhausted_entries_held_until_retry_failed(self, tmp_path, clock):
        store = LocalStore(tmp_path / 'exhausted.db', max_retries=2, clock=clock)
        store.add_reminder(make_reminder())
        for _ in range(2):
            success, entries = store.pending_entries(include_waiting=True)
            store.mark_failed(entries[0], 'Server error')
        clock.advance(hours=1)

        success, entries = store.pending_entries(include_waiting=True)
        assert entries == []
        success, status = store.get_queue_status()
        assert status['total'] == 1
        assert status['failed'] == 1

        success, count = store.retry_failed()
        assert success
        assert count == 1
        success, entries = store.pending_entries()
        assert len(entries) == 1
        assert entries[0].retry_count == 0

    def test_mark_failed_permanent(self, store):
        store.add_reminder(make_reminder())
        success, entries = store.pending_entries()
        store.mark_failed(entries[0], 'The reminder details are not valid', permanent=True)
        success, entries = store.pending_entries(include_waiting=True)
        assert entries == []
        success, status = store.get_queue_status()
        assert status['failed'] == 1

    def test_queue_status(self, store, clock):
        store.add_reminder(make_reminder('One'))
        success, two = store.add_reminder(make_reminder('Two'))
        success, entries = store.pending_entries()
        for entry in entries:
            store.acknowledge(entry)
        clock.advance(minutes=1)
        store.add_reminder(make_reminder('Three'))
        two.title = 'Two updated'
        store.update_reminder(two)
        store.delete_reminder(1)
        clock.advance(minutes=2)

        success, status = store.get_queue_status()
        assert success
        assert status['total'] == 3
        assert status['pending_inserts'] == 1
        assert status['pending_updates'] == 1
        assert status['pending_deletes'] == 1
        assert status['oldest_enqueued_at'] == NOW + datetime.timedelta(minutes=1)
        assert status['oldest_age_seconds'] == 120
        assert status['failed'] == 0

    def test_queue_status_empty(self, store):
        success, status = store.get_queue_status()
        assert status['total'] == 0
        assert status['oldest_enqueued_at'] is None
        assert status['oldest_age_seconds'] is None

    def test_apply_remote_new(self, store):
        remote = make_reminder('From another device', updated_at=NOW)
        remote.id = 5
        success, changed = store.apply_remote(remote)
        assert success
        assert changed is True
        success, local = store.get_reminder(5)
        assert local == remote
        assert operations(store) == []

    def test_apply_remote_unchanged(self, store):
        success, reminder = store.add_reminder(make_reminder())
        success, entries = store.pending_entries()
        store.acknowledge(entries[0])
        success, local = store.get_reminder(reminder.id)
        success, changed = store.apply_remote(local)
        assert changed is False

    def test_apply_remote_ignored_while_pending(self, store):
        success, reminder = store.add_reminder(make_reminder())
        remote = make_reminder('Remote title', updated_at=NOW + datetime.timedelta(hours=1))
        remote.id = reminder.id
        success, changed = store.apply_remote(remote)
        assert changed is False
        success, local = store.get_reminder(reminder.id)
        assert local.title == 'Water the plants'

    def test_apply_remote_ignored_when_local_newer(self, store, clock):
        success, reminder = store.add_reminder(make_reminder())
        success, entries = store.pending_entries()
        store.acknowledge(entries[0])
        remote = make_reminder('Older remote title', updated_at=NOW - datetime.timedelta(minutes=5))
        remote.id = reminder.id
        success, changed = store.apply_remote(remote)
        assert changed is False

        success, changed = store.apply_remote(remote, force=True)
        assert changed is True
        success, local = store.get_reminder(reminder.id)
        assert local.title == 'Older remote title'

    def test_apply_remote_forced_still_waits_for_pending(self, store):
        success, reminder = store.add_reminder(make_reminder())
        remote = make_reminder('Remote title', updated_at=NOW - datetime.timedelta(minutes=5))
        remote.id = reminder.id
        success, changed = store.apply_remote(remote, force=True)
        assert changed is False

    def test_apply_remote_newer_wins(self, store):
        success, reminder = store.add_reminder(make_reminder())
        success, entries = store.pending_entries()
        store.acknowledge(entries[0])
        remote = make_reminder('Newer remote title', updated_at=NOW + datetime.timedelta(minutes=5))
        remote.id = reminder.id
        success, changed = store.apply_remote(remote)
        assert changed is True
        success, local = store.get_reminder(reminder.id)
        assert local.title == 'Newer remote title'

    def test_triggered_window(self, store, clock):
        store.add_reminder(make_reminder('Due', next_occurrence_instant=NOW - datetime.timedelta(minutes=2)))
        store.add_reminder(make_reminder('Long overdue', next_occurrence_instant=NOW - datetime.timedelta(minutes=6)))
        store.add_reminder(make_reminder('Future', next_occurrence_instant=NOW + datetime.timedelta(minutes=2)))
        store.add_reminder(make_reminder('Paused', status=ReminderStatus.PAUSED,
                                         next_occurrence_instant=NOW - datetime.timedelta(minutes=1)))
        success, triggered = store.get_triggered_reminders()
        assert success
        assert [r.title for r in triggered] == ['Due']

    def test_needs_sync(self, store, clock):
        assert store.needs_sync() is True
        store.set_last_sync_time(clock())
        assert store.get_last_sync_time() == NOW
        assert store.needs_sync() is False
        store.add_reminder(make_reminder())
        assert store.needs_sync() is True
        success, entries = store.pending_entries()
        store.acknowledge(entries[0])
        assert store.needs_sync() is False
        clock.advance(hours=1, seconds=1)
        assert store.needs_sync() is True

    def test_migrate_legacy_frequencies(self, store):
        success, reminder = store.add_reminder(make_reminder(frequency=Once(datetime.date(2026, 3, 20))))
        success, entries = store.pending_entries()
        store.acknowledge(entries[0])
        legacy = {'id': 'custom', 'intervalValue': 2, 'intervalUnit': 'hours'}
        with closing(sqlite3.connect(store.db_path)) as connection:
            connection.execute("UPDATE tb_reminder SET frequency = ? WHERE id = ?", (json.dumps(legacy), reminder.id))
            connection.commit()

        success, count = store.migrate_legacy_frequencies()
        assert success
        assert count == 1
        with closing(sqlite3.connect(store.db_path)) as connection:
            stored = connection.execute("SELECT frequency FROM tb_reminder WHERE id = ?", (reminder.id,)).fetchone()
        assert json.loads(stored[0]) == {'type': 'custom', 'interval': 2, 'unit': 'hours'}
        assert operations(store) == [(reminder.id, SyncOperation.UPDATE)]

        success, count = store.migrate_legacy_frequencies()
        assert success
        assert count == 0

    def test_migration_runs_once(self, store):
        success, count = store.migrate_legacy_frequencies()
        assert count == 0
        success, reminder = store.add_reminder(make_reminder())
        with closing(sqlite3.connect(store.db_path)) as connection:
            connection.execute("UPDATE tb_reminder SET frequency = ? WHERE id = ?",
                               (json.dumps({'id': 'daily'}), reminder.id))
            connection.commit()
        success, count = store.migrate_legacy_frequencies()
        assert count == 0

    @pytest.mark.parametrize('title', ['', '   '])
    def test_blank_title_rejected(self, title):
        with pytest.raises(ValidationError):
            make_reminder(title)
