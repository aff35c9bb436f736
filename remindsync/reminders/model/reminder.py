"""
Contains the ``Reminder`` class, which represents a reminder (whether stored locally or remotely).
"""

from __future__ import annotations

import datetime
import enum
import json
import sqlite3
from typing import Any, Dict

from remindsync.errors import ValidationError
from remindsync.helpers import DateUtil
from remindsync.reminders.model import frequency as freq
from remindsync.reminders.model.frequency import FrequencySpec


class ReminderStatus(enum.Enum):
    """
    The lifecycle status of a reminder. ``DELETED`` is never stored; it is the terminal state of the lifecycle.
    """

    ACTIVE = 'active'
    PAUSED = 'paused'
    SNOOZED = 'snoozed'
    COMPLETED = 'completed'
    DELETED = 'deleted'


class Reminder:
    """
    Represents a reminder. Reminders are created by the user, stored in the local store and replayed to the remote store
    through the sync queue.
    """

    def __init__(self,
                 reminder_id: int | None,
                 title: str,
                 category: str,
                 frequency: FrequencySpec,
                 time_of_day: datetime.time,
                 description: str = '',
                 status: ReminderStatus = ReminderStatus.ACTIVE,
                 next_occurrence: str = '',
                 next_occurrence_instant: datetime.datetime | None = None,
                 notifications_enabled: bool = True,
                 repeat_limit: int = 0,
                 completion_count: int = 0,
                 audio_ref: str | None = None,
                 created_at: datetime.datetime | None = None,
                 updated_at: datetime.datetime | None = None,
                 last_completed: datetime.datetime | None = None,
                 completed_at: datetime.datetime | None = None,
                 snoozed_at: datetime.datetime | None = None,
                 ):
        """
        Create a new reminder.

        :param reminder_id: the local id of this reminder, or None if it has not been stored yet.
        :param title: the title of this reminder.
        :param category: the category of this reminder.
        :param frequency: how this reminder repeats.
        :param time_of_day: the local time of day at which calendar frequencies fire.
        :param description: an optional description.
        :param status: the lifecycle status.
        :param next_occurrence: the next occurrence, formatted for display.
        :param next_occurrence_instant: the exact instant of the next occurrence (UTC).
        :param notifications_enabled: if False, no background trigger is registered for this reminder.
        :param repeat_limit: the number of completions after which the reminder is completed. 0 means unlimited.
        :param completion_count: the number of times this reminder has been completed.
        :param audio_ref: opaque reference to the audio played with this reminder.
        :param created_at: when this reminder was created.
        :param updated_at: when this reminder was last modified locally.
        :param last_completed: when this reminder was last completed.
        :param completed_at: when this reminder reached the ``Completed`` status.
        :param snoozed_at: when this reminder was last snoozed.
        """
        if not title or not title.strip():
            raise ValidationError('A reminder needs a title.')
        if repeat_limit < 0:
            raise ValidationError('Repeat limit cannot be negative.')
        self.id: int | None = reminder_id
        self.title: str = title
        self.category: str = category
        self.description: str = description
        self.frequency: FrequencySpec = frequency
        self.time_of_day: datetime.time = time_of_day
        self.status: ReminderStatus = status
        self.next_occurrence: str = next_occurrence
        self.next_occurrence_instant: datetime.datetime | None = next_occurrence_instant
        self.notifications_enabled: bool = notifications_enabled
        self.repeat_limit: int = repeat_limit
        self.completion_count: int = completion_count
        self.audio_ref: str | None = audio_ref
        self.created_at: datetime.datetime | None = created_at
        self.updated_at: datetime.datetime | None = updated_at
        self.last_completed: datetime.datetime | None = last_completed
        self.completed_at: datetime.datetime | None = completed_at
        self.snoozed_at: datetime.datetime | None = snoozed_at

    @property
    def is_recurring(self) -> bool:
        return freq.is_recurring(self.frequency)

    @property
    def repeat_limit_reached(self) -> bool:
        return self.repeat_limit > 0 and self.completion_count >= self.repeat_limit

    def to_dict(self) -> Dict[str, Any]:
        """
        Returns a JSON-serialisable snapshot of this reminder. This is the payload stored in the sync queue and sent to the
        remote store.

        :return: the reminder as a dictionary.
        """
        iso = DateUtil.ISO_DATETIME
        return {
            'id': self.id,
            'title': self.title,
            'category': self.category,
            'description': self.description,
            'frequency': self.frequency.to_dict(),
            'time': DateUtil.convert('', self.time_of_day, DateUtil.TIME_OF_DAY),
            'status': self.status.value,
            'next_occurrence': self.next_occurrence,
            'next_occurrence_instant': DateUtil.convert('', self.next_occurrence_instant, iso),
            'notifications_enabled': self.notifications_enabled,
            'repeat_limit': self.repeat_limit,
            'completion_count': self.completion_count,
            'audio_ref': self.audio_ref,
            'created_at': DateUtil.convert('', self.created_at, iso),
            'updated_at': DateUtil.convert('', self.updated_at, iso),
            'last_completed': DateUtil.convert('', self.last_completed, iso),
            'completed_at': DateUtil.convert('', self.completed_at, iso),
            'snoozed_at': DateUtil.convert('', self.snoozed_at, iso),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> Reminder:
        """
        Creates a Reminder instance from a dictionary produced by ``to_dict``. Frequencies stored in a legacy shape are
        migrated on the way in.

        :param data: the reminder as a dictionary.

        :return: a Reminder instance representing the dictionary.

        :raises ValidationError: if a field is missing or invalid.
        """
        iso = DateUtil.ISO_DATETIME
        try:
            return Reminder(
                reminder_id=data.get('id'),
                title=data['title'],
                category=data.get('category', ''),
                description=data.get('description') or '',
                frequency=freq.from_dict(freq.migrate_frequency(data['frequency'])),
                time_of_day=DateUtil.convert(DateUtil.TIME_OF_DAY, data['time']),
                status=ReminderStatus(data.get('status', ReminderStatus.ACTIVE.value)),
                next_occurrence=data.get('next_occurrence') or '',
                next_occurrence_instant=DateUtil.convert(iso, data.get('next_occurrence_instant')),
                notifications_enabled=bool(data.get('notifications_enabled', True)),
                repeat_limit=int(data.get('repeat_limit', 0)),
                completion_count=int(data.get('completion_count', 0)),
                audio_ref=data.get('audio_ref'),
                created_at=DateUtil.convert(iso, data.get('created_at')),
                updated_at=DateUtil.convert(iso, data.get('updated_at')),
                last_completed=DateUtil.convert(iso, data.get('last_completed')),
                completed_at=DateUtil.convert(iso, data.get('completed_at')),
                snoozed_at=DateUtil.convert(iso, data.get('snoozed_at')),
            )
        except KeyError as e:
            raise ValidationError('Reminder is missing field {}'.format(e)) from None
        except ValueError as e:
            raise ValidationError('Reminder has an invalid field: {}'.format(e)) from None

    @staticmethod
    def from_row(row: sqlite3.Row) -> Reminder:
        """
        Creates a Reminder instance from a row of the ``tb_reminder`` table.

        :param row: the database row.

        :return: a Reminder instance representing the row.
        """
        data = dict(row)
        data['frequency'] = json.loads(data['frequency'])
        data['notifications_enabled'] = data['notifications_enabled'] == 1
        return Reminder.from_dict(data)

    def to_row(self) -> Dict[str, Any]:
        """
        :return: the values of this reminder keyed by ``tb_reminder`` column.
        """
        row = self.to_dict()
        row['frequency'] = json.dumps(row['frequency'])
        row['notifications_enabled'] = 1 if self.notifications_enabled else 0
        return row

    def __eq__(self, other):
        return isinstance(other, Reminder) and self.to_dict() == other.to_dict()

    def __hash__(self):
        return hash((self.id, self.title))

    def __str__(self):
        return self.title

    def __repr__(self):
        return '<Reminder {}: {} ({})>'.format(self.id, self.title, self.status.value)
