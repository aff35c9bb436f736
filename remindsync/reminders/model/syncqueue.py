"""
Contains the ``SyncQueueEntry`` class, which represents one not-yet-acknowledged remote intent in the sync queue.
"""

from __future__ import annotations

import datetime
import enum
import json
import sqlite3
from typing import Any, Dict

from remindsync.helpers import DateUtil

#: Table name used for reminder intents in queue entries.
REMINDER_TABLE = 'reminders'


class SyncOperation(enum.Enum):
    INSERT = 'insert'
    UPDATE = 'update'
    DELETE = 'delete'


def backoff_minutes(retry_count: int) -> int:
    """
    Minutes to wait before a failed entry is attempted again: 1, 2, 4, 8, then 16 for every further failure.
    """
    return min(16, max(1, 1 << (retry_count - 1)))


class SyncQueueEntry:
    """
    Represents one pending remote intent. The payload is a snapshot of the reminder taken when the intent was recorded.
    """

    def __init__(self,
                 entry_id: int | None,
                 reminder_id: int,
                 operation: SyncOperation,
                 payload: Dict[str, Any],
                 enqueued_at: datetime.datetime,
                 table: str = REMINDER_TABLE,
                 retry_count: int = 0,
                 last_error: str | None = None,
                 next_retry_at: datetime.datetime | None = None):
        """
        Create a new queue entry.

        :param entry_id: the id of the entry in the queue, or None if it has not been stored yet.
        :param reminder_id: the id of the reminder the intent concerns.
        :param operation: the remote operation to replay.
        :param payload: the reminder snapshot to replay.
        :param enqueued_at: when the intent was recorded.
        :param table: the remote table targeted.
        :param retry_count: the number of failed replay attempts so far.
        :param last_error: the error of the last failed replay attempt.
        :param next_retry_at: the entry is not replayed before this instant.
        """
        self.id: int | None = entry_id
        self.reminder_id: int = reminder_id
        self.operation: SyncOperation = operation
        self.table: str = table
        self.payload: Dict[str, Any] = payload
        self.enqueued_at: datetime.datetime = enqueued_at
        self.retry_count: int = retry_count
        self.last_error: str | None = last_error
        self.next_retry_at: datetime.datetime | None = next_retry_at

    def is_exhausted(self, max_retries: int) -> bool:
        return self.retry_count >= max_retries

    def is_due(self, now: datetime.datetime) -> bool:
        return self.next_retry_at is None or self.next_retry_at <= now

    @staticmethod
    def from_row(row: sqlite3.Row) -> SyncQueueEntry:
        """
        Creates a queue entry from a row of the ``tb_sync_queue`` table.

        :param row: the database row.

        :return: the queue entry.
        """
        return SyncQueueEntry(
            entry_id=row['id'],
            reminder_id=row['reminder_id'],
            operation=SyncOperation(row['operation']),
            table=row['target_table'],
            payload=json.loads(row['payload']),
            enqueued_at=DateUtil.convert(DateUtil.ISO_DATETIME, row['enqueued_at']),
            retry_count=row['retry_count'],
            last_error=row['last_error'],
            next_retry_at=DateUtil.convert(DateUtil.ISO_DATETIME, row['next_retry_at']),
        )

    def __str__(self):
        return '{} {}'.format(self.operation.value, self.reminder_id)

    def __repr__(self):
        return '<SyncQueueEntry {}: {} reminder {} (retries: {})>'.format(
            self.id, self.operation.value, self.reminder_id, self.retry_count)
