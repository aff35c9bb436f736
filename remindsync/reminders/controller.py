"""
This is the reminder controller. It contains every user-facing reminder operation and ties the local store, the
notification scheduler and the sync engine together. These are called by the CLI, but can be called separately if
imported.

Every operation writes to the local store first and returns without waiting on the network. Operations return a
``(success, data)`` tuple, where ``data`` is the result on success or a user-facing error message on failure.
"""

from __future__ import annotations

import datetime
import logging
from typing import Callable, List

from remindsync.errors import ReminderError, ValidationError, log_error
from remindsync.reminders import lifecycle
from remindsync.reminders.model.frequency import FrequencySpec
from remindsync.reminders.model.localstore import LocalStore
from remindsync.reminders.model.occurrence import OccurrenceCalculator, validate_schedule_time, time_remaining_minutes
from remindsync.reminders.model.reminder import Reminder, ReminderStatus
from remindsync.reminders.notifications import NotificationAction, NotificationPayload, NotificationScheduler, SCHEDULABLE
from remindsync.reminders.retry import StatusCallback
from remindsync.reminders.sync import ConflictStrategy, SyncEngine

#: Snooze length used when a notification is snoozed without a duration.
DEFAULT_SNOOZE_MINUTES = 5


class ReminderController:
    """
    Contains the operations of the reminder lifecycle.
    """

    def __init__(self,
                 store: LocalStore,
                 scheduler: NotificationScheduler,
                 engine: SyncEngine | None = None,
                 calculator: OccurrenceCalculator | None = None,
                 on_alert: Callable[[Reminder], None] | None = None):
        """
        :param store: the local store.
        :param scheduler: the notification scheduler.
        :param engine: the sync engine. If None, reminders are kept locally only.
        :param calculator: the occurrence calculator. Defaults to the scheduler's.
        :param on_alert: called with a reminder whenever it becomes due.
        """
        self.store: LocalStore = store
        self.scheduler: NotificationScheduler = scheduler
        self.engine: SyncEngine | None = engine
        self.calculator: OccurrenceCalculator = calculator or scheduler.calculator
        self.on_alert: Callable[[Reminder], None] | None = on_alert
        self.scheduler.on_trigger = self.handle_notification_action
        self.scheduler.on_overdue = self._handle_overdue

    def _load(self, reminder_id: int) -> Reminder:
        success, data = self.store.get_reminder(reminder_id)
        if not success:
            raise ValidationError(data, reminder_id)
        return data

    def _save(self, reminder: Reminder) -> Reminder:
        success, data = self.store.update_reminder(reminder)
        if not success:
            raise ValidationError(data, reminder.id)
        return data

    def _schedule(self, reminder: Reminder) -> None:
        success, data = self.scheduler.register(reminder)
        if not success:
            logging.warning('Reminder {} saved, but its trigger could not be registered: {}'.format(reminder.id, data))

    def _set_next(self, reminder: Reminder, instant: datetime.datetime | None, display: str | None = None) -> None:
        reminder.next_occurrence_instant = instant
        reminder.next_occurrence = display if display is not None else self.calculator.describe(instant)

    def start(self) -> tuple[bool, str] | tuple[bool, dict]:
        """
        Prepare the local store and register a trigger for every active reminder. Called when the process starts.

        :returns:

            -success (:py:class:`bool`) - true if the reminders are scheduled.

            -data (:py:class:`str` | :py:class:`dict`) - error message on failure, or a scheduling summary.

        """
        success, data = self.store.migrate_legacy_frequencies()
        if not success:
            logging.critical(data)
            return False, data
        return self.scheduler.schedule_all_active_reminders()

    def create_reminder(self,
                        title: str,
                        category: str,
                        frequency: FrequencySpec,
                        time_of_day: datetime.time,
                        description: str = '',
                        repeat_limit: int = 0,
                        notifications_enabled: bool = True,
                        audio_ref: str | None = None) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Create a reminder, calculate its first occurrence and register its trigger.

        :param title: the title of the reminder.
        :param category: the category of the reminder.
        :param frequency: how the reminder repeats.
        :param time_of_day: the local time of day at which calendar frequencies fire.
        :param description: an optional description.
        :param repeat_limit: the number of completions after which the reminder is completed. 0 means unlimited.
        :param notifications_enabled: if False, no trigger is registered.
        :param audio_ref: opaque reference to the audio played with the reminder.

        :returns:

            -success (:py:class:`bool`) - true if the reminder is created.

            -data (:py:class:`str` | :py:class:`Reminder`) - error message on failure, or the new reminder.

        """
        try:
            reminder = Reminder(None, title, category, frequency, time_of_day, description=description,
                                repeat_limit=repeat_limit, notifications_enabled=notifications_enabled,
                                audio_ref=audio_ref)
            self._set_next(reminder, self.calculator.precise(frequency, time_of_day))
        except ReminderError as e:
            return False, log_error(e, 'Create reminder')
        success, data = self.store.add_reminder(reminder)
        if not success:
            logging.critical(data)
            return False, data
        self._schedule(data)
        logging.info('Created reminder {}: {} ({})'.format(data.id, data.title, data.next_occurrence))
        return True, data

    def pause(self, reminder_id: int) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Pause a reminder. Its trigger is cancelled and it shows as ``Paused``.
        """
        try:
            reminder = lifecycle.transition(self._load(reminder_id), ReminderStatus.PAUSED)
            self._set_next(reminder, None, 'Paused')
            reminder = self._save(reminder)
        except ReminderError as e:
            return False, log_error(e, 'Pause reminder')
        # The paused row must be saved before the trigger is cancelled
        self.scheduler.cancel_notification(reminder_id)
        return True, reminder

    def resume(self, reminder_id: int) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Resume a paused reminder with a freshly calculated next occurrence.
        """
        try:
            reminder = self._load(reminder_id)
            lifecycle.transition(reminder, ReminderStatus.ACTIVE)
            self._set_next(reminder, self.calculator.next_instant(reminder.frequency, reminder.time_of_day))
            reminder = self._save(reminder)
        except ReminderError as e:
            return False, log_error(e, 'Resume reminder')
        self._schedule(reminder)
        return True, reminder

    def toggle_pause(self, reminder_id: int) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Pause an active reminder, or resume a paused one.
        """
        success, data = self.store.get_reminder(reminder_id)
        if not success:
            return False, data
        if data.status == ReminderStatus.PAUSED:
            return self.resume(reminder_id)
        return self.pause(reminder_id)

    def snooze(self, reminder_id: int, minutes: int = DEFAULT_SNOOZE_MINUTES) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Snooze a reminder for a number of minutes. When the snooze trigger fires, the reminder becomes active again.
        """
        try:
            if minutes < 1:
                raise ValidationError('Snooze needs a positive number of minutes.', reminder_id)
            reminder = lifecycle.transition(self._load(reminder_id), ReminderStatus.SNOOZED)
            now = self.calculator.now()
            reminder.snoozed_at = now
            self._set_next(reminder, validate_schedule_time(now + datetime.timedelta(minutes=minutes), now),
                           'Snoozed for {} minutes'.format(minutes))
            reminder = self._save(reminder)
        except ReminderError as e:
            return False, log_error(e, 'Snooze reminder')
        self._schedule(reminder)
        return True, reminder

    def fire(self, reminder_id: int) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Handle a reminder whose trigger fired. A snoozed reminder becomes active again. A recurring reminder moves on to
        its next occurrence, so it always keeps one live trigger.
        """
        try:
            reminder = self._load(reminder_id)
            if reminder.status not in SCHEDULABLE:
                self.scheduler.cancel_notification(reminder_id)
                return True, reminder
            if self.on_alert is not None:
                self.on_alert(reminder)
            if reminder.status == ReminderStatus.SNOOZED:
                lifecycle.transition(reminder, ReminderStatus.ACTIVE)
            if reminder.is_recurring:
                self._set_next(reminder, self.calculator.next_instant(reminder.frequency, reminder.time_of_day))
            else:
                self._set_next(reminder, reminder.next_occurrence_instant)
            reminder = self._save(reminder)
        except ReminderError as e:
            return False, log_error(e, 'Fire reminder')
        self._schedule(reminder)
        return True, reminder

    def _handle_overdue(self, reminder: Reminder) -> None:
        logging.info('Delivering overdue reminder {}: {}'.format(reminder.id, reminder.title))
        self.fire(reminder.id)

    def complete(self, reminder_id: int) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Complete an occurrence of a reminder. A recurring reminder under its repeat limit becomes active again with its
        next occurrence, skipping the rest of today for calendar frequencies. Otherwise the reminder stays completed and
        its trigger is cancelled.
        """
        try:
            reminder = lifecycle.transition(self._load(reminder_id), ReminderStatus.COMPLETED)
            now = self.calculator.now()
            reminder.completion_count += 1
            reminder.last_completed = now
            if lifecycle.can_transition(reminder, ReminderStatus.ACTIVE):
                lifecycle.transition(reminder, ReminderStatus.ACTIVE)
                self._set_next(reminder, self.calculator.next_instant(reminder.frequency, reminder.time_of_day,
                                                                      skip_today=True))
            else:
                reminder.completed_at = now
                self._set_next(reminder, None, 'Completed')
            reminder = self._save(reminder)
        except ReminderError as e:
            return False, log_error(e, 'Complete reminder')
        if reminder.status == ReminderStatus.ACTIVE:
            self._schedule(reminder)
        else:
            self.scheduler.cancel_notification(reminder_id)
        logging.info('Reminder {} completed {} time(s)'.format(reminder_id, reminder.completion_count))
        return True, reminder

    def complete_manually(self, reminder_id: int) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Mark a reminder as completed for good, whatever its frequency and repeat limit.
        """
        try:
            reminder = lifecycle.transition(self._load(reminder_id), ReminderStatus.COMPLETED)
            now = self.calculator.now()
            reminder.completed_at = now
            reminder.last_completed = now
            self._set_next(reminder, None, 'Completed')
            reminder = self._save(reminder)
        except ReminderError as e:
            return False, log_error(e, 'Complete reminder')
        self.scheduler.cancel_notification(reminder_id)
        return True, reminder

    def delete(self, reminder_id: int) -> tuple[bool, str]:
        """
        Delete a reminder. Its trigger is cancelled and any pending sync entries collapse into one remote delete.
        """
        try:
            lifecycle.transition(self._load(reminder_id), ReminderStatus.DELETED)
        except ReminderError as e:
            return False, log_error(e, 'Delete reminder')
        success, data = self.store.delete_reminder(reminder_id)
        if not success:
            logging.critical(data)
            return False, data
        self.scheduler.cancel_notification(reminder_id, forget=True)
        return True, data

    def handle_notification_action(self, payload: NotificationPayload | str) -> tuple[bool, str] | tuple[bool, Reminder]:
        """
        Handle the action a user took on a notification.

        :param payload: the notification payload, or its JSON or legacy string form.

        :returns:

            -success (:py:class:`bool`) - true if the action is handled.

            -data (:py:class:`str` | :py:class:`Reminder`) - error message on failure, or the reminder.

        """
        try:
            if isinstance(payload, str):
                payload = NotificationPayload.parse(payload)
            if not payload.is_valid():
                raise ValidationError('Invalid notification payload {}'.format(payload), payload.reminder_id)
        except ReminderError as e:
            return False, log_error(e, 'Handle notification')

        if payload.action == NotificationAction.TRIGGER:
            return self.fire(payload.reminder_id)
        if payload.action == NotificationAction.SNOOZE:
            return self.snooze(payload.reminder_id, DEFAULT_SNOOZE_MINUTES)
        if payload.action == NotificationAction.COMPLETE:
            return self.complete(payload.reminder_id)
        logging.debug('Notification for reminder {} dismissed'.format(payload.reminder_id))
        return self.store.get_reminder(payload.reminder_id)

    def get_reminders(self, statuses: List[ReminderStatus] | None = None) -> tuple[bool, str] | \
            tuple[bool, List[Reminder]]:
        """
        Read reminders from the local store, with the display of each scheduled occurrence brought up to date.
        """
        success, data = self.store.get_reminders(statuses)
        if not success:
            logging.critical(data)
            return False, data
        for reminder in data:
            if reminder.status == ReminderStatus.ACTIVE and reminder.next_occurrence_instant is not None:
                reminder.next_occurrence = self.calculator.describe(reminder.next_occurrence_instant)
        return True, data

    def time_remaining(self, reminder_id: int) -> tuple[bool, str] | tuple[bool, int]:
        """
        Whole minutes until the next occurrence of a reminder, or -1 if it is overdue.
        """
        success, data = self.store.get_reminder(reminder_id)
        if not success:
            return False, data
        return True, time_remaining_minutes(data.next_occurrence_instant, self.calculator.now())

    def sync_now(self, strategy: ConflictStrategy | None = None, on_status: StatusCallback | None = None) -> \
            tuple[bool, str] | tuple[bool, dict]:
        """
        Synchronise with the remote store now. Triggers of reminders changed by the sync are registered again.
        """
        if self.engine is None:
            return False, 'No remote store configured'
        success, data = self.engine.sync_now(strategy, on_status)
        if not success:
            logging.critical(data)
            return False, data
        for reminder_id in data['changed']:
            success, reminder = self.store.get_reminder(reminder_id)
            if success:
                self._schedule(reminder)
        return True, data

    def queue_status(self) -> tuple[bool, str] | tuple[bool, dict]:
        """
        Summarise the sync queue, adding the time of the last successful sync and whether a sync is needed.
        """
        success, data = self.store.get_queue_status()
        if not success:
            return False, data
        data['last_sync_time'] = self.store.get_last_sync_time()
        data['needs_sync'] = self.store.needs_sync()
        return True, data
