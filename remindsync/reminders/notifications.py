"""
Contains the notification side of RemindSync:

- ``NotificationPayload`` - the flat payload carried by every trigger.
- ``NotificationBackend`` - the schedule/cancel primitives of the host notification layer, and
  ``ScheduleNotificationBackend``, which delivers triggers in-process with the ``schedule`` library.
- ``NotificationScheduler`` - keeps exactly one live trigger per schedulable reminder, reacts to application lifecycle
  changes, and falls back to foreground polling when notification permission is denied.
"""

from __future__ import annotations

import datetime
import enum
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List

import schedule

from remindsync import helpers
from remindsync.errors import (InvalidTimeError, NotificationPermissionError, ReminderError, ValidationError,
                               log_error)
from remindsync.helpers import DateUtil
from remindsync.reminders.model.localstore import LocalStore
from remindsync.reminders.model.occurrence import OccurrenceCalculator
from remindsync.reminders.model.reminder import Reminder, ReminderStatus
from remindsync.reminders.retry import RetryPolicy

#: Statuses for which a trigger is kept registered.
SCHEDULABLE = (ReminderStatus.ACTIVE, ReminderStatus.SNOOZED)


class NotificationAction(enum.Enum):
    TRIGGER = 'trigger'
    SNOOZE = 'snooze'
    COMPLETE = 'complete'
    DISMISS = 'dismiss'


@dataclass(frozen=True)
class NotificationPayload:
    """
    The payload attached to a trigger. Serialised as JSON with a ``version`` field; the legacy ``id|title|category``
    form is still understood.
    """
    reminder_id: int
    title: str
    category: str
    action: NotificationAction = NotificationAction.TRIGGER
    scheduled_time: datetime.datetime | None = None

    VERSION = 1

    def is_valid(self) -> bool:
        return (isinstance(self.reminder_id, int) and self.reminder_id > 0 and bool(self.title) and
                bool(self.category) and isinstance(self.action, NotificationAction))

    def to_json(self) -> str:
        data = {
            'id': self.reminder_id,
            'title': self.title,
            'category': self.category,
            'action': self.action.value,
            'version': NotificationPayload.VERSION,
        }
        if self.scheduled_time is not None:
            data['scheduledTime'] = DateUtil.convert('', self.scheduled_time, DateUtil.ISO_DATETIME)
        return json.dumps(data)

    @staticmethod
    def from_dict(data: dict) -> NotificationPayload:
        """
        :raises ValidationError: if a field is missing or invalid.
        """
        reminder_id = data.get('id')
        if not isinstance(reminder_id, int) or isinstance(reminder_id, bool):
            raise ValidationError('Invalid or missing reminder id in notification payload.')
        for field in ('title', 'category', 'action'):
            if not isinstance(data.get(field), str) or not data[field]:
                raise ValidationError('Invalid or missing {} in notification payload.'.format(field))
        try:
            action = NotificationAction(data['action'])
        except ValueError:
            raise ValidationError('Invalid notification action: {}'.format(data['action'])) from None
        try:
            scheduled_time = DateUtil.convert(DateUtil.ISO_DATETIME, data.get('scheduledTime'))
        except (TypeError, ValueError):
            raise ValidationError('Invalid scheduled time: {}'.format(data.get('scheduledTime'))) from None
        return NotificationPayload(reminder_id, data['title'], data['category'], action, scheduled_time)

    @staticmethod
    def from_json(raw: str) -> NotificationPayload:
        """
        :raises ValidationError: if the payload is not valid JSON or misses a field.
        """
        try:
            data = json.loads(raw)
        except json.decoder.JSONDecodeError as e:
            raise ValidationError('Notification payload is not valid JSON: {}'.format(e)) from None
        if not isinstance(data, dict):
            raise ValidationError('Notification payload must be a JSON object.')
        return NotificationPayload.from_dict(data)

    @staticmethod
    def from_legacy_format(raw: str) -> NotificationPayload | None:
        """
        Parse a legacy ``id|title|category`` payload.

        :return: the payload with the ``trigger`` action, or None if ``raw`` is not a legacy payload.
        """
        parts = raw.split('|')
        if len(parts) < 3 or not parts[0].strip().isdigit() or not parts[1] or not parts[2]:
            return None
        return NotificationPayload(int(parts[0]), parts[1], parts[2])

    @staticmethod
    def parse(raw: str) -> NotificationPayload:
        """
        Parse a payload in either the JSON or the legacy form.

        :raises ValidationError: if ``raw`` is in neither form.
        """
        if raw.lstrip().startswith('{'):
            return NotificationPayload.from_json(raw)
        payload = NotificationPayload.from_legacy_format(raw)
        if payload is None:
            raise ValidationError('Unrecognised notification payload: {}'.format(raw))
        return payload


class NotificationBackend(ABC):
    """
    The primitives of the host notification layer.
    """

    @abstractmethod
    def schedule(self, trigger_time: datetime.datetime, payload: NotificationPayload) -> None:
        """
        Register a trigger.

        :raises NotificationPermissionError: if notifications are not permitted.
        """

    @abstractmethod
    def cancel(self, reminder_id: int) -> None:
        """Remove the pending trigger for a reminder, if any."""

    @abstractmethod
    def cancel_all(self) -> None:
        """Remove every pending trigger."""

    @abstractmethod
    def pending(self) -> Dict[int, tuple[datetime.datetime, NotificationPayload]]:
        """
        :return: the pending triggers, keyed by reminder id.
        """


class ScheduleNotificationBackend(NotificationBackend):
    """
    Delivers triggers in-process. Each registration is a ``schedule`` job tagged with the reminder id, which checks every
    second whether its trigger time has come, delivers the payload, and cancels itself. The jobs run while something
    calls ``run_pending`` on the scheduler, such as the thread started by :py:func:`remindsync.helpers.run_continuously`.
    """

    def __init__(self, deliver: Callable[[NotificationPayload], None] | None = None,
                 permission_granted: bool = True,
                 scheduler: schedule.Scheduler | None = None,
                 clock: Callable[[], datetime.datetime] = helpers.now):
        """
        :param deliver: receives each payload whose trigger time has come.
        :param permission_granted: if False, every registration is refused with a permission error.
        :param scheduler: the scheduler holding the trigger jobs.
        :param clock: callable returning the current aware datetime.
        """
        self.deliver = deliver
        self.permission_granted: bool = permission_granted
        self.scheduler: schedule.Scheduler = scheduler or schedule.Scheduler()
        self.clock = clock
        self._pending: Dict[int, tuple[datetime.datetime, NotificationPayload]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def tag(reminder_id: int) -> str:
        return 'reminder-{}'.format(reminder_id)

    def schedule(self, trigger_time: datetime.datetime, payload: NotificationPayload) -> None:
        if not self.permission_granted:
            raise NotificationPermissionError('Notification permission denied.', payload.reminder_id)
        with self._lock:
            self.scheduler.clear(self.tag(payload.reminder_id))
            self._pending[payload.reminder_id] = (trigger_time, payload)
            self.scheduler.every(1).seconds.do(self._fire_if_due, payload.reminder_id, trigger_time).tag(
                self.tag(payload.reminder_id))

    def _fire_if_due(self, reminder_id: int, trigger_time: datetime.datetime):
        if self.clock() < trigger_time:
            return None
        with self._lock:
            _, payload = self._pending.pop(reminder_id, (None, None))
        if payload is not None and self.deliver is not None:
            self.deliver(payload)
        return schedule.CancelJob

    def cancel(self, reminder_id: int) -> None:
        with self._lock:
            self.scheduler.clear(self.tag(reminder_id))
            self._pending.pop(reminder_id, None)

    def cancel_all(self) -> None:
        with self._lock:
            for reminder_id in list(self._pending):
                self.scheduler.clear(self.tag(reminder_id))
            self._pending.clear()

    def pending(self) -> Dict[int, tuple[datetime.datetime, NotificationPayload]]:
        with self._lock:
            return dict(self._pending)

    def registrations(self, reminder_id: int) -> int:
        """
        :return: the number of live trigger jobs for a reminder.
        """
        return len(self.scheduler.get_jobs(self.tag(reminder_id)))


class AppState(enum.Enum):
    """
    Application lifecycle states the scheduler reacts to.
    """

    RESUMED = 'resumed'
    PAUSED = 'paused'
    INACTIVE = 'inactive'
    DETACHED = 'detached'


class NotificationScheduler:
    """
    Keeps one live trigger per Active or Snoozed reminder.

    Registration for a reminder is cancel-then-replace under a lock owned by that reminder id, so calls for different
    reminders never wait on each other and repeated calls for one reminder leave a single registration.
    """

    FALLBACK_TAG = 'fallback-poll'
    OVERDUE_TAG = 'overdue-check'

    def __init__(self,
                 store: LocalStore,
                 backend: NotificationBackend,
                 calculator: OccurrenceCalculator | None = None,
                 retry_policy: RetryPolicy | None = None,
                 poll_scheduler: schedule.Scheduler | None = None,
                 poll_interval: int = 30):
        """
        :param store: the local store.
        :param backend: the host notification layer.
        :param calculator: the occurrence calculator.
        :param retry_policy: the retry policy for transient scheduling errors.
        :param poll_scheduler: the scheduler running the fallback poll and the periodic overdue check.
        :param poll_interval: seconds between two fallback polls.
        """
        self.store: LocalStore = store
        self.backend: NotificationBackend = backend
        self.calculator: OccurrenceCalculator = calculator or OccurrenceCalculator(clock=store.clock)
        self.retry_policy: RetryPolicy = retry_policy or RetryPolicy(base_delay=0.5, max_attempts=2)
        self.poll_scheduler: schedule.Scheduler = poll_scheduler or schedule.Scheduler()
        self.poll_interval: int = poll_interval
        self.fallback_mode: bool = False
        self.on_trigger: Callable[[NotificationPayload], None] | None = None
        self.on_overdue: Callable[[Reminder], None] | None = None
        self._locks: Dict[int, threading.Lock] = {}
        self._delivered: Dict[int, datetime.datetime] = {}

    def _lock_for(self, reminder_id: int) -> threading.Lock:
        return self._locks.setdefault(reminder_id, threading.Lock())

    def deliver(self, payload: NotificationPayload) -> None:
        """
        Hand a fired trigger to whoever handles notification actions.
        """
        logging.info('Reminder due: {} ({})'.format(payload.title, payload.category))
        if payload.scheduled_time is not None:
            self._delivered[payload.reminder_id] = payload.scheduled_time
        if self.on_trigger is not None:
            self.on_trigger(payload)

    def _register(self, reminder: Reminder) -> tuple[bool, str]:
        """
        Cancel-then-replace the trigger of a reminder. Must be called with the reminder's lock held.
        """
        self.backend.cancel(reminder.id)
        if (reminder.status not in SCHEDULABLE or not reminder.notifications_enabled
                or reminder.next_occurrence_instant is None):
            return True, 'Reminder {} needs no trigger'.format(reminder.id)
        if reminder.next_occurrence_instant <= self.calculator.now():
            return True, 'Reminder {} is already due'.format(reminder.id)
        if self.fallback_mode:
            return True, 'Reminder {} is covered by foreground polling'.format(reminder.id)

        payload = NotificationPayload(reminder.id, reminder.title, reminder.category or 'General',
                                      NotificationAction.TRIGGER, reminder.next_occurrence_instant)
        try:
            self.retry_policy.run(lambda: self.backend.schedule(reminder.next_occurrence_instant, payload),
                                  'Schedule reminder {}'.format(reminder.id))
        except NotificationPermissionError as e:
            self.enable_fallback(str(e))
            return True, 'Reminder {} is covered by foreground polling'.format(reminder.id)
        except ReminderError as e:
            return False, '{}'.format(e)
        logging.debug('Scheduled trigger for reminder {} at {}'.format(reminder.id, reminder.next_occurrence_instant))
        return True, 'Reminder {} scheduled'.format(reminder.id)

    def register(self, reminder: Reminder) -> tuple[bool, str]:
        """
        Register the trigger of a reminder as it is, without recalculating its next occurrence.

        :param reminder: the reminder.

        :returns:

            -success (:py:class:`bool`) - true if the reminder is scheduled, or needs no trigger.

            -data (:py:class:`str`) - error message on failure or success message.

        """
        with self._lock_for(reminder.id):
            return self._register(reminder)

    def reschedule_reminder(self, reminder_id: int) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Recalculate the next occurrence of a reminder, store it, and replace its trigger. A Snoozed reminder keeps its
        snooze time while that lies in the future.

        :param reminder_id: the id of the reminder.

        :returns:

            -success (:py:class:`bool`) - true if the reminder is rescheduled.

            -data (:py:class:`str` | :py:class:`Reminder`) - error message on failure, or the rescheduled reminder.

        """
        with self._lock_for(reminder_id):
            success, data = self.store.get_reminder(reminder_id)
            if not success:
                self.backend.cancel(reminder_id)
                return False, data
            reminder = data
            if reminder.status not in SCHEDULABLE:
                self.backend.cancel(reminder_id)
                return True, reminder

            now = self.calculator.now()
            keep_snooze = (reminder.status == ReminderStatus.SNOOZED and reminder.next_occurrence_instant is not None
                           and reminder.next_occurrence_instant > now)
            if not keep_snooze:
                try:
                    instant = self.calculator.next_instant(reminder.frequency, reminder.time_of_day)
                except InvalidTimeError as e:
                    self.backend.cancel(reminder_id)
                    return False, log_error(e, 'Reschedule reminder {}'.format(reminder_id))
                if instant != reminder.next_occurrence_instant:
                    reminder.next_occurrence_instant = instant
                    reminder.next_occurrence = self.calculator.describe(instant)
                    success, data = self.store.update_reminder(reminder)
                    if not success:
                        return False, data
            success, data = self._register(reminder)
            if not success:
                return False, data
            return True, reminder

    def cancel_notification(self, reminder_id: int, forget: bool = False) -> None:
        """
        Remove the trigger of a reminder. Waits for any scheduling in flight for the same reminder.

        :param reminder_id: the id of the reminder.
        :param forget: if True, the reminder was deleted and its lock is dropped as well.
        """
        with self._lock_for(reminder_id):
            self.backend.cancel(reminder_id)
            self._delivered.pop(reminder_id, None)
        if forget:
            self._locks.pop(reminder_id, None)
        logging.debug('Cancelled trigger for reminder {}'.format(reminder_id))

    def cancel_all_notifications(self) -> None:
        self.backend.cancel_all()
        self._delivered.clear()
        logging.debug('Cancelled all triggers')

    def schedule_all_active_reminders(self) -> tuple[bool, str] | tuple[bool, dict]:
        """
        Register a trigger for every Active and Snoozed reminder, replacing any stale registration. Active reminders whose
        next occurrence is missing or already passed are rescheduled first, except one-off reminders that already came
        due, which wait for completion. Safe to call repeatedly.

        If more than half of the registrations fail, foreground polling is switched on.

        :returns:

            -success (:py:class:`bool`) - true if the reminders could be read.

            -data (:py:class:`str` | :py:class:`dict`) - error message on failure, or the number of reminders
            ``scheduled`` and ``failed``.

        """
        success, data = self.store.get_reminders(list(SCHEDULABLE))
        if not success:
            return False, data
        logging.info('Scheduling {} active reminders'.format(len(data)))
        now = self.calculator.now()
        scheduled = failed = 0
        for reminder in data:
            passed = reminder.next_occurrence_instant is not None and reminder.next_occurrence_instant <= now
            if reminder.status == ReminderStatus.ACTIVE and (reminder.next_occurrence_instant is None
                                                             or (passed and reminder.is_recurring)):
                success, result = self.reschedule_reminder(reminder.id)
            else:
                success, result = self.register(reminder)
            if success:
                scheduled += 1
            else:
                failed += 1
                logging.warning('Failed to schedule reminder {}: {}'.format(reminder.id, result))

        if data and failed > len(data) / 2:
            self.enable_fallback('High failure rate in background scheduling ({}/{})'.format(failed, len(data)))
        return True, {'scheduled': scheduled, 'failed': failed}

    def check_overdue(self) -> List[Reminder]:
        """
        Find Active and Snoozed reminders whose next occurrence passed while nothing was delivering triggers, and hand
        each one to ``on_overdue``.

        :return: the overdue reminders.
        """
        success, data = self.store.get_reminders(list(SCHEDULABLE))
        if not success:
            logging.error(data)
            return []
        now = self.calculator.now()
        overdue = [r for r in data if r.next_occurrence_instant is not None and r.next_occurrence_instant < now
                   and self._delivered.get(r.id) != r.next_occurrence_instant]
        for reminder in overdue:
            logging.warning('Reminder {} is overdue since {}'.format(reminder.id, reminder.next_occurrence_instant))
            self._delivered[reminder.id] = reminder.next_occurrence_instant
            if self.on_overdue is not None:
                self.on_overdue(reminder)
        return overdue

    def handle_app_state_change(self, state: AppState) -> tuple[bool, str] | tuple[bool, dict]:
        """
        React to an application lifecycle change.

        - ``PAUSED`` / ``DETACHED`` - make sure every active reminder has a live trigger.
        - ``RESUMED`` - surface reminders that became overdue while the process was not running, then reschedule.

        :param state: the new state.

        :returns:

            -success (:py:class:`bool`) - true if the change is handled.

            -data (:py:class:`str` | :py:class:`dict`) - error message on failure, or a summary.

        """
        logging.debug('Application state changed to {}'.format(state.value))
        if state in (AppState.PAUSED, AppState.DETACHED):
            return self.schedule_all_active_reminders()
        if state == AppState.RESUMED:
            overdue = self.check_overdue()
            success, data = self.schedule_all_active_reminders()
            if not success:
                return False, data
            data['overdue'] = [r.id for r in overdue]
            return True, data
        return True, {}

    def enable_fallback(self, reason: str) -> None:
        """
        Switch to foreground polling. Pending triggers are dropped, and due reminders are found by comparing now with
        their next occurrence every ``poll_interval`` seconds while the process runs.
        """
        if self.fallback_mode:
            return
        self.fallback_mode = True
        logging.warning('Notification scheduling degraded to foreground polling: {}'.format(reason))
        self.backend.cancel_all()
        self.poll_scheduler.every(self.poll_interval).seconds.do(self.poll_due_reminders).tag(self.FALLBACK_TAG)

    def disable_fallback(self) -> tuple[bool, str] | tuple[bool, dict]:
        """
        Leave foreground polling and register triggers again.
        """
        self.fallback_mode = False
        self.poll_scheduler.clear(self.FALLBACK_TAG)
        logging.info('Notification scheduling restored')
        return self.schedule_all_active_reminders()

    def poll_due_reminders(self) -> List[NotificationPayload]:
        """
        Deliver every Active or Snoozed reminder whose next occurrence has come and which has not been delivered yet.

        :return: the payloads delivered.
        """
        success, data = self.store.get_reminders(list(SCHEDULABLE))
        if not success:
            logging.error(data)
            return []
        now = self.calculator.now()
        delivered = []
        for reminder in data:
            instant = reminder.next_occurrence_instant
            if (instant is None or instant > now or not reminder.notifications_enabled
                    or self._delivered.get(reminder.id) == instant):
                continue
            payload = NotificationPayload(reminder.id, reminder.title, reminder.category or 'General',
                                          NotificationAction.TRIGGER, instant)
            self.deliver(payload)
            delivered.append(payload)
        return delivered

    def start_periodic_check(self, interval_minutes: int = 30) -> None:
        """
        Check for overdue reminders and refresh every trigger every ``interval_minutes`` minutes.
        """
        self.poll_scheduler.clear(self.OVERDUE_TAG)
        self.poll_scheduler.every(interval_minutes).minutes.do(
            self.handle_app_state_change, AppState.RESUMED).tag(self.OVERDUE_TAG)

    def get_triggered_reminders(self) -> tuple[bool, str] | tuple[bool, List[Reminder]]:
        """
        Active reminders whose occurrence came within the last five minutes.
        """
        return self.store.get_triggered_reminders()
