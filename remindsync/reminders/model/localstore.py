"""
Contains the ``LocalStore`` class, the durable local store of reminders and its attached sync queue.

The local store is the source of truth. Every mutating call updates the reminder and appends one entry describing the
same intent to the sync queue, in a single SQLite transaction, and returns before any network activity happens.
"""

from __future__ import annotations

import datetime
import json
import logging
import sqlite3
import threading
from contextlib import closing
from pathlib import Path
from typing import Callable, List

from remindsync import helpers
from remindsync.helpers import DateUtil
from remindsync.reminders.model import frequency as freq
from remindsync.reminders.model.reminder import Reminder, ReminderStatus
from remindsync.reminders.model.syncqueue import SyncOperation, SyncQueueEntry, REMINDER_TABLE, backoff_minutes

#: Columns of the reminder table, in insertion order.
REMINDER_COLUMNS = [
    'id', 'title', 'category', 'description', 'frequency', 'time', 'status', 'next_occurrence',
    'next_occurrence_instant', 'notifications_enabled', 'repeat_limit', 'completion_count', 'audio_ref',
    'created_at', 'updated_at', 'last_completed', 'completed_at', 'snoozed_at'
]

#: Window after an occurrence during which a reminder still counts as triggered.
TRIGGER_WINDOW = datetime.timedelta(minutes=5)


class LocalStore:
    """
    Durable local store of reminders with an attached outbox of pending remote intents.

    There is a single owner of the store per process; every call holds the store lock, so each mutation is atomic from
    the caller's point of view.
    """

    def __init__(self, db_path: Path | None = None, max_retries: int = 5,
                 clock: Callable[[], datetime.datetime] = helpers.now):
        """
        Create a new local store. The tables are created on first use.

        :param db_path: path to the SQLite database. Defaults to the database in the data location.
        :param max_retries: the number of failed replays after which a queue entry counts as failed.
        :param clock: callable returning the current aware datetime.
        """
        self.db_path: Path = db_path or helpers.db_folder()
        self.max_retries: int = max_retries
        self.clock: Callable[[], datetime.datetime] = clock
        self._lock = threading.RLock()
        self._seeded = False

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self.db_path)
        connection.row_factory = sqlite3.Row
        return connection

    def _now(self) -> datetime.datetime:
        return self.clock().astimezone(datetime.timezone.utc).replace(microsecond=0)

    def seed(self) -> tuple[bool, str]:
        """
        Creates the initial structure of the reminder, sync queue and metadata tables.

        :returns:

            -success (:py:class:`bool`) - true if the tables are successfully created.

            -data (:py:class:`str`) - error message on failure or success message.

        """
        with self._lock:
            if self._seeded:
                return True, 'Tables already created'
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        cursor.execute("""CREATE TABLE IF NOT EXISTS tb_reminder (
                                            id INTEGER PRIMARY KEY AUTOINCREMENT,
                                            title TEXT NOT NULL,
                                            category TEXT,
                                            description TEXT,
                                            frequency TEXT NOT NULL,
                                            time TEXT NOT NULL,
                                            status TEXT NOT NULL,
                                            next_occurrence TEXT,
                                            next_occurrence_instant TEXT,
                                            notifications_enabled INT,
                                            repeat_limit INT,
                                            completion_count INT,
                                            audio_ref TEXT,
                                            created_at TEXT,
                                            updated_at TEXT,
                                            last_completed TEXT,
                                            completed_at TEXT,
                                            snoozed_at TEXT
                                            );""")
                        cursor.execute("""CREATE TABLE IF NOT EXISTS tb_sync_queue (
                                            id INTEGER PRIMARY KEY AUTOINCREMENT,
                                            reminder_id INT NOT NULL,
                                            operation TEXT NOT NULL,
                                            target_table TEXT NOT NULL,
                                            payload TEXT NOT NULL,
                                            enqueued_at TEXT NOT NULL,
                                            retry_count INT DEFAULT 0,
                                            last_error TEXT,
                                            next_retry_at TEXT
                                            );""")
                        cursor.execute("""CREATE TABLE IF NOT EXISTS tb_meta (
                                            key TEXT PRIMARY KEY,
                                            value TEXT
                                            );""")
                        connection.commit()
            except sqlite3.OperationalError as e:
                return False, repr(e)
            self._seeded = True
            return True, 'tb_reminder, tb_sync_queue and tb_meta tables created'

    def _enqueue(self, cursor: sqlite3.Cursor, reminder_id: int, operation: SyncOperation, payload: dict) -> None:
        """
        Append an intent to the queue. Any earlier unflushed entry for the same reminder is superseded. An update to a
        reminder whose insert has not been flushed yet stays an insert.
        """
        previous = [SyncOperation(r['operation']) for r in
                    cursor.execute("SELECT operation FROM tb_sync_queue WHERE reminder_id = ?", (reminder_id,))]
        if operation == SyncOperation.UPDATE and SyncOperation.INSERT in previous:
            operation = SyncOperation.INSERT
        cursor.execute("DELETE FROM tb_sync_queue WHERE reminder_id = ?", (reminder_id,))
        cursor.execute("""INSERT INTO tb_sync_queue(reminder_id, operation, target_table, payload, enqueued_at)
                          VALUES (?, ?, ?, ?, ?)""",
                       (reminder_id, operation.value, REMINDER_TABLE, json.dumps(payload),
                        DateUtil.convert('', self._now(), DateUtil.ISO_DATETIME)))

    def add_reminder(self, reminder: Reminder) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Store a new reminder and queue its remote insert.

        :param reminder: the reminder to store. Its id is assigned by the store.

        :returns:

            -success (:py:class:`bool`) - true if the reminder is successfully stored.

            -data (:py:class:`str` | :py:class:`Reminder`) - error message on failure, or the stored reminder.

        """
        success, data = self.seed()
        if not success:
            return False, data
        with self._lock:
            now = self._now()
            reminder.created_at = reminder.created_at or now
            reminder.updated_at = now
            row = reminder.to_row()
            columns = [c for c in REMINDER_COLUMNS if c != 'id' or reminder.id is not None]
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        cursor.execute("INSERT INTO tb_reminder({}) VALUES ({})".format(
                            ', '.join(columns), ', '.join('?' for _ in columns)), [row[c] for c in columns])
                        reminder.id = cursor.lastrowid if reminder.id is None else reminder.id
                        self._enqueue(cursor, reminder.id, SyncOperation.INSERT, reminder.to_dict())
                        connection.commit()
            except (sqlite3.OperationalError, sqlite3.IntegrityError) as e:
                return False, 'Failed to store reminder {0}: {1}'.format(reminder.title, e)
            logging.debug('Stored reminder {} ({})'.format(reminder.id, reminder.title))
            return True, reminder

    def update_reminder(self, reminder: Reminder) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Update a stored reminder and queue its remote update.

        :param reminder: the reminder to update.

        :returns:

            -success (:py:class:`bool`) - true if the reminder is successfully updated.

            -data (:py:class:`str` | :py:class:`Reminder`) - error message on failure, or the updated reminder.

        """
        success, data = self.seed()
        if not success:
            return False, data
        with self._lock:
            reminder.updated_at = self._now()
            row = reminder.to_row()
            columns = [c for c in REMINDER_COLUMNS if c != 'id']
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        cursor.execute("UPDATE tb_reminder SET {} WHERE id = ?".format(
                            ', '.join('{} = ?'.format(c) for c in columns)), [row[c] for c in columns] + [reminder.id])
                        if cursor.rowcount == 0:
                            return False, 'Reminder {} not found'.format(reminder.id)
                        self._enqueue(cursor, reminder.id, SyncOperation.UPDATE, reminder.to_dict())
                        connection.commit()
            except sqlite3.OperationalError as e:
                return False, 'Failed to update reminder {0}: {1}'.format(reminder.id, e)
            return True, reminder

    def delete_reminder(self, reminder_id: int) -> tuple[bool, str]:
        """
        Delete a stored reminder and queue its remote delete. Earlier pending entries for the reminder are collapsed into
        the delete.

        :param reminder_id: the id of the reminder to delete.

        :returns:

            -success (:py:class:`bool`) - true if the reminder is successfully deleted.

            -data (:py:class:`str`) - error message on failure or success message.

        """
        success, data = self.seed()
        if not success:
            return False, data
        with self._lock:
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        cursor.execute("DELETE FROM tb_reminder WHERE id = ?", (reminder_id,))
                        if cursor.rowcount == 0:
                            return False, 'Reminder {} not found'.format(reminder_id)
                        self._enqueue(cursor, reminder_id, SyncOperation.DELETE, {'id': reminder_id})
                        connection.commit()
            except sqlite3.OperationalError as e:
                return False, 'Failed to delete reminder {0}: {1}'.format(reminder_id, e)
            logging.debug('Deleted reminder {}'.format(reminder_id))
            return True, 'Reminder {} deleted'.format(reminder_id)

    def get_reminders(self, statuses: List[ReminderStatus] | None = None) -> tuple[bool, str] | \
            tuple[bool, List[Reminder]]:
        """
        Read reminders from the local store. Never waits on the remote store.

        :param statuses: if given, only reminders with one of these statuses are returned.

        :returns:

            -success (:py:class:`bool`) - true if the reminders are successfully loaded.

            -data (:py:class:`str` | :py:class:`List[Reminder]`) - error message on failure, or the reminders.

        """
        success, data = self.seed()
        if not success:
            return False, data
        with self._lock:
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        rows = cursor.execute("SELECT * FROM tb_reminder ORDER BY id").fetchall()
            except sqlite3.OperationalError as e:
                return False, 'Error retrieving reminders from table: {}'.format(e)
        reminders = [Reminder.from_row(r) for r in rows]
        if statuses is not None:
            reminders = [r for r in reminders if r.status in statuses]
        return True, reminders

    def get_reminder(self, reminder_id: int) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Read one reminder from the local store.

        :param reminder_id: the id of the reminder.

        :returns:

            -success (:py:class:`bool`) - true if the reminder is found.

            -data (:py:class:`str` | :py:class:`Reminder`) - error message on failure, or the reminder.

        """
        success, data = self.seed()
        if not success:
            return False, data
        with self._lock:
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        row = cursor.execute("SELECT * FROM tb_reminder WHERE id = ?", (reminder_id,)).fetchone()
            except sqlite3.OperationalError as e:
                return False, 'Error retrieving reminder {0}: {1}'.format(reminder_id, e)
        if row is None:
            return False, 'Reminder {} not found'.format(reminder_id)
        return True, Reminder.from_row(row)

    def get_triggered_reminders(self) -> tuple[bool, str] | tuple[bool, List[Reminder]]:
        """
        Active reminders whose next occurrence is now, or passed less than five minutes ago.

        :returns:

            -success (:py:class:`bool`) - true if the reminders are successfully loaded.

            -data (:py:class:`str` | :py:class:`List[Reminder]`) - error message on failure, or the reminders.

        """
        success, data = self.get_reminders([ReminderStatus.ACTIVE])
        if not success:
            return False, data
        now = self._now()
        return True, [r for r in data if r.next_occurrence_instant is not None and
                      datetime.timedelta(0) <= now - r.next_occurrence_instant <= TRIGGER_WINDOW]

    def has_pending(self, reminder_id: int) -> bool:
        """
        :return: True if the queue holds an unflushed entry for the reminder.
        """
        with self._lock:
            self.seed()
            with closing(self._connect()) as connection:
                with closing(connection.cursor()) as cursor:
                    row = cursor.execute("SELECT COUNT(*) AS pending FROM tb_sync_queue WHERE reminder_id = ?",
                                         (reminder_id,)).fetchone()
            return row['pending'] > 0

    def apply_remote(self, remote: Reminder, force: bool = False) -> tuple[bool, str] | tuple[bool, bool]:
        """
        Write a reminder pulled from the remote store, without queueing a remote intent. A local reminder with an
        unflushed queue entry is never overwritten, nor is one with a strictly newer local timestamp unless ``force``
        is set.

        :param remote: the reminder as found in the remote store.
        :param force: if True, the local timestamp is ignored. Used for records chosen by conflict resolution.

        :returns:

            -success (:py:class:`bool`) - true if the reminder is successfully reconciled.

            -data (:py:class:`str` | :py:class:`bool`) - error message on failure, or True if the local store changed.

        """
        success, data = self.seed()
        if not success:
            return False, data
        with self._lock:
            if self.has_pending(remote.id):
                logging.debug('Reminder {} has pending local changes, remote copy ignored'.format(remote.id))
                return True, False
            success, local = self.get_reminder(remote.id)
            if (not force and success and local.updated_at and remote.updated_at
                    and local.updated_at > remote.updated_at):
                logging.debug('Local reminder {} is newer than remote copy, remote copy ignored'.format(remote.id))
                return True, False
            if success and local == remote:
                return True, False
            row = remote.to_row()
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        cursor.execute("INSERT OR REPLACE INTO tb_reminder({}) VALUES ({})".format(
                            ', '.join(REMINDER_COLUMNS), ', '.join('?' for _ in REMINDER_COLUMNS)),
                            [row[c] for c in REMINDER_COLUMNS])
                        connection.commit()
            except sqlite3.OperationalError as e:
                return False, 'Failed to apply remote reminder {0}: {1}'.format(remote.id, e)
            return True, True

    def pending_entries(self, include_waiting: bool = False) -> tuple[bool, str] | tuple[bool, List[SyncQueueEntry]]:
        """
        Queue entries to replay, oldest first. Entries which have exhausted their retries are left out.

        :param include_waiting: if True, entries still waiting for their backoff to elapse are included.

        :returns:

            -success (:py:class:`bool`) - true if the queue is successfully read.

            -data (:py:class:`str` | :py:class:`List[SyncQueueEntry]`) - error message on failure, or the entries.

        """
        success, data = self.seed()
        if not success:
            return False, data
        with self._lock:
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        rows = cursor.execute("SELECT * FROM tb_sync_queue WHERE retry_count < ? ORDER BY id",
                                              (self.max_retries,)).fetchall()
            except sqlite3.OperationalError as e:
                return False, 'Error retrieving sync queue: {}'.format(e)
        entries = [SyncQueueEntry.from_row(r) for r in rows]
        if not include_waiting:
            now = self._now()
            entries = [e for e in entries if e.is_due(now)]
        return True, entries

    def acknowledge(self, entry: SyncQueueEntry) -> tuple[bool, str]:
        """
        Remove a queue entry once the remote store has confirmed it. If a newer intent superseded the entry meanwhile,
        the newer intent is kept.

        :param entry: the acknowledged entry.

        :returns:

            -success (:py:class:`bool`) - true if the entry is removed (or already gone).

            -data (:py:class:`str`) - error message on failure or success message.

        """
        with self._lock:
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        cursor.execute("DELETE FROM tb_sync_queue WHERE id = ?", (entry.id,))
                        connection.commit()
            except sqlite3.OperationalError as e:
                return False, 'Failed to acknowledge queue entry {0}: {1}'.format(entry.id, e)
            return True, 'Queue entry {} acknowledged'.format(entry.id)

    def mark_failed(self, entry: SyncQueueEntry, error: str, permanent: bool = False) -> tuple[bool, str]:
        """
        Record a failed replay of a queue entry and hold it back for an exponentially growing delay.

        :param entry: the entry which failed.
        :param error: the error message.
        :param permanent: if True, the entry is marked as having exhausted its retries straight away.

        :returns:

            -success (:py:class:`bool`) - true if the failure is recorded.

            -data (:py:class:`str`) - error message on failure or success message.

        """
        with self._lock:
            entry.retry_count = self.max_retries if permanent else entry.retry_count + 1
            entry.last_error = error
            entry.next_retry_at = self._now() + datetime.timedelta(minutes=backoff_minutes(entry.retry_count))
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        cursor.execute("""UPDATE tb_sync_queue SET retry_count = ?, last_error = ?, next_retry_at = ?
                                          WHERE id = ?""",
                                       (entry.retry_count, error,
                                        DateUtil.convert('', entry.next_retry_at, DateUtil.ISO_DATETIME), entry.id))
                        connection.commit()
            except sqlite3.OperationalError as e:
                return False, 'Failed to record queue failure {0}: {1}'.format(entry.id, e)
            if entry.is_exhausted(self.max_retries):
                logging.warning('Queue entry {} exhausted its retries: {}'.format(repr(entry), error))
            return True, 'Queue entry {} failure recorded'.format(entry.id)

    def retry_failed(self) -> tuple[bool, str] | tuple[bool, int]:
        """
        Make entries which exhausted their retries eligible for replay again.

        :returns:

            -success (:py:class:`bool`) - true if the entries are reset.

            -data (:py:class:`str` | :py:class:`int`) - error message on failure, or the number of entries reset.

        """
        success, data = self.seed()
        if not success:
            return False, data
        with self._lock:
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        cursor.execute("""UPDATE tb_sync_queue SET retry_count = 0, next_retry_at = NULL
                                          WHERE retry_count >= ?""", (self.max_retries,))
                        count = cursor.rowcount
                        connection.commit()
            except sqlite3.OperationalError as e:
                return False, 'Failed to reset failed queue entries: {}'.format(e)
            return True, count

    def get_queue_status(self) -> tuple[bool, str] | tuple[bool, dict]:
        """
        Summarise the sync queue. The dictionary returned has the following keys:

        - ``total`` - the number of entries in the queue.
        - ``pending_inserts``, ``pending_updates``, ``pending_deletes`` - the number of entries per operation.
        - ``oldest_enqueued_at`` - when the oldest entry was recorded, or None.
        - ``oldest_age_seconds`` - the age of the oldest entry in seconds, or None.
        - ``failed`` - the number of entries which exhausted their retries.

        :returns:

            -success (:py:class:`bool`) - true if the queue is successfully read.

            -data (:py:class:`str` | :py:class:`dict`) - error message on failure or the summary.

        """
        success, data = self.seed()
        if not success:
            return False, data
        with self._lock:
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        rows = cursor.execute("SELECT * FROM tb_sync_queue ORDER BY id").fetchall()
            except sqlite3.OperationalError as e:
                return False, 'Error retrieving sync queue: {}'.format(e)
        entries = [SyncQueueEntry.from_row(r) for r in rows]
        oldest = min((e.enqueued_at for e in entries), default=None)
        return True, {
            'total': len(entries),
            'pending_inserts': len([e for e in entries if e.operation == SyncOperation.INSERT]),
            'pending_updates': len([e for e in entries if e.operation == SyncOperation.UPDATE]),
            'pending_deletes': len([e for e in entries if e.operation == SyncOperation.DELETE]),
            'oldest_enqueued_at': oldest,
            'oldest_age_seconds': (self._now() - oldest).total_seconds() if oldest else None,
            'failed': len([e for e in entries if e.is_exhausted(self.max_retries)]),
        }

    def _get_meta(self, key: str) -> str | None:
        self.seed()
        with closing(self._connect()) as connection:
            with closing(connection.cursor()) as cursor:
                row = cursor.execute("SELECT value FROM tb_meta WHERE key = ?", (key,)).fetchone()
        return row['value'] if row else None

    def _set_meta(self, key: str, value: str) -> None:
        self.seed()
        with closing(self._connect()) as connection:
            with closing(connection.cursor()) as cursor:
                cursor.execute("INSERT OR REPLACE INTO tb_meta(key, value) VALUES (?, ?)", (key, value))
                connection.commit()

    def get_last_sync_time(self) -> datetime.datetime | None:
        with self._lock:
            return DateUtil.convert(DateUtil.ISO_DATETIME, self._get_meta('last_sync_time'))

    def set_last_sync_time(self, when: datetime.datetime) -> None:
        with self._lock:
            self._set_meta('last_sync_time', DateUtil.convert('', when, DateUtil.ISO_DATETIME))

    def needs_sync(self, max_age: datetime.timedelta = datetime.timedelta(hours=1)) -> bool:
        """
        :return: True if the queue holds entries, or the last successful sync is older than ``max_age``.
        """
        success, status = self.get_queue_status()
        if success and status['total'] > 0:
            return True
        last_sync = self.get_last_sync_time()
        return last_sync is None or self._now() - last_sync > max_age

    def migrate_legacy_frequencies(self) -> tuple[bool, str] | tuple[bool, int]:
        """
        One-time migration of reminders whose frequency is stored in a legacy shape to the canonical shape. The migration
        is recorded in the metadata table, so later calls do nothing. Each migrated reminder queues a remote update.

        :returns:

            -success (:py:class:`bool`) - true if the migration succeeds or has already run.

            -data (:py:class:`str` | :py:class:`int`) - error message on failure, or the number of reminders migrated.

        """
        success, data = self.seed()
        if not success:
            return False, data
        with self._lock:
            if self._get_meta('frequency_migration') == 'done':
                return True, 0
            migrated = 0
            try:
                with closing(self._connect()) as connection:
                    with closing(connection.cursor()) as cursor:
                        rows = cursor.execute("SELECT * FROM tb_reminder").fetchall()
                        for row in rows:
                            stored = json.loads(row['frequency'])
                            if not freq.is_legacy(stored):
                                continue
                            reminder = Reminder.from_row(row)
                            reminder.updated_at = self._now()
                            cursor.execute("UPDATE tb_reminder SET frequency = ?, updated_at = ? WHERE id = ?",
                                           (json.dumps(reminder.frequency.to_dict()),
                                            DateUtil.convert('', reminder.updated_at, DateUtil.ISO_DATETIME),
                                            reminder.id))
                            self._enqueue(cursor, reminder.id, SyncOperation.UPDATE, reminder.to_dict())
                            migrated += 1
                        cursor.execute("INSERT OR REPLACE INTO tb_meta(key, value) VALUES ('frequency_migration', 'done')")
                        connection.commit()
            except sqlite3.OperationalError as e:
                return False, 'Failed to migrate reminder frequencies: {}'.format(e)
            logging.info('Migrated {} reminders to the canonical frequency shape'.format(migrated))
            return True, migrated
