"""
The reminder lifecycle state machine.

::

    Active    -> Paused, Snoozed, Completed, Deleted
    Paused    -> Active, Deleted
    Snoozed   -> Active, Completed, Deleted
    Completed -> Active (recurring reminders under their repeat limit only), Deleted

``Deleted`` is terminal.
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet

from remindsync.errors import InvalidTransitionError
from remindsync.reminders.model.reminder import Reminder, ReminderStatus

S = ReminderStatus

TRANSITIONS: Dict[ReminderStatus, FrozenSet[ReminderStatus]] = {
    S.ACTIVE: frozenset({S.PAUSED, S.SNOOZED, S.COMPLETED, S.DELETED}),
    S.PAUSED: frozenset({S.ACTIVE, S.DELETED}),
    S.SNOOZED: frozenset({S.ACTIVE, S.COMPLETED, S.DELETED}),
    S.COMPLETED: frozenset({S.ACTIVE, S.DELETED}),
    S.DELETED: frozenset(),
}


def can_transition(reminder: Reminder, target: ReminderStatus) -> bool:
    """
    :param reminder: the reminder to change.
    :param target: the requested status.

    :return: True if the reminder may move from its current status to ``target``.
    """
    if target not in TRANSITIONS[reminder.status]:
        return False
    if reminder.status == S.COMPLETED and target == S.ACTIVE:
        return reminder.is_recurring and not reminder.repeat_limit_reached
    return True


def transition(reminder: Reminder, target: ReminderStatus) -> Reminder:
    """
    Move a reminder to a new status.

    :param reminder: the reminder to change. It is modified in place.
    :param target: the requested status.

    :return: the reminder.

    :raises InvalidTransitionError: if the transition is not allowed.
    """
    if not can_transition(reminder, target):
        raise InvalidTransitionError('Cannot move reminder from {} to {}.'.format(
            reminder.status.value, target.value), reminder.id)
    logging.debug('Reminder {}: {} -> {}'.format(reminder.id, reminder.status.value, target.value))
    reminder.status = target
    return reminder
