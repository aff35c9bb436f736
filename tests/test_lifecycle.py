import datetime

import pytest

from remindsync.errors import InvalidTransitionError
from remindsync.reminders import lifecycle
from remindsync.reminders.model.frequency import Daily, Once
from remindsync.reminders.model.reminder import Reminder, ReminderStatus

S = ReminderStatus


def make_reminder(status: ReminderStatus, frequency=None, **kwargs) -> Reminder:
    return Reminder(1, 'Stretch', 'health', frequency or Daily(), datetime.time(9, 0), status=status, **kwargs)


class TestLifecycle:

    @pytest.mark.parametrize('source, target', [
        (S.ACTIVE, S.PAUSED),
        (S.ACTIVE, S.SNOOZED),
        (S.ACTIVE, S.COMPLETED),
        (S.ACTIVE, S.DELETED),
        (S.PAUSED, S.ACTIVE),
        (S.PAUSED, S.DELETED),
        (S.SNOOZED, S.ACTIVE),
        (S.SNOOZED, S.COMPLETED),
        (S.SNOOZED, S.DELETED),
        (S.COMPLETED, S.ACTIVE),
        (S.COMPLETED, S.DELETED),
    ])
    def test_allowed(self, source, target):
        reminder = make_reminder(source)
        assert lifecycle.transition(reminder, target) is reminder
        assert reminder.status == target

    @pytest.mark.parametrize('source, target', [
        (S.ACTIVE, S.ACTIVE),
        (S.PAUSED, S.PAUSED),
        (S.PAUSED, S.SNOOZED),
        (S.PAUSED, S.COMPLETED),
        (S.SNOOZED, S.PAUSED),
        (S.COMPLETED, S.PAUSED),
        (S.COMPLETED, S.SNOOZED),
        (S.DELETED, S.ACTIVE),
    ])
    def test_rejected(self, source, target):
        reminder = make_reminder(source)
        assert lifecycle.can_transition(reminder, target) is False
        with pytest.raises(InvalidTransitionError):
            lifecycle.transition(reminder, target)
        assert reminder.status == source

    def test_completed_once_stays_completed(self):
        reminder = make_reminder(S.COMPLETED, Once(datetime.date(2026, 3, 12)))
        assert lifecycle.can_transition(reminder, S.ACTIVE) is False

    def test_completed_at_repeat_limit_stays_completed(self):
        reminder = make_reminder(S.COMPLETED, repeat_limit=2, completion_count=2)
        assert lifecycle.can_transition(reminder, S.ACTIVE) is False
        reminder.completion_count = 1
        assert lifecycle.can_transition(reminder, S.ACTIVE) is True
