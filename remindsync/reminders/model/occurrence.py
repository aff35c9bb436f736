"""
Contains the occurrence calculator, which turns a ``FrequencySpec`` and a time of day into the next instant at which a
reminder should fire, and the schedule validator which enforces the minimum lead time.

All instants returned here are timezone-aware UTC datetimes. Calendar variants are calculated on the local wall clock,
so a reminder set for 09:00 keeps firing at 09:00 local time across a daylight-saving change.
"""

from __future__ import annotations

import datetime
import logging

from dateutil.relativedelta import relativedelta

from remindsync import helpers
from remindsync.errors import InvalidTimeError, ValidationError
from remindsync.reminders.model.frequency import (FrequencySpec, Once, Daily, Weekly, Monthly, Hourly, Minutely, Custom)

#: Minimum lead time between now and any computed occurrence.
BUFFER = datetime.timedelta(minutes=1)

_UTC = datetime.timezone.utc


def _at(day: datetime.date, time_of_day: datetime.time, tzinfo: datetime.tzinfo) -> datetime.datetime:
    """
    The instant at which the local wall clock shows ``time_of_day`` on ``day``.
    """
    local = datetime.datetime.combine(day, time_of_day.replace(tzinfo=None), tzinfo=tzinfo)
    return local.astimezone(_UTC)


def _floor(now: datetime.datetime | None) -> datetime.datetime:
    if now is None:
        return helpers.now()
    if now.tzinfo is None:
        raise ValidationError('Current time must be timezone-aware.')
    return now.astimezone(_UTC).replace(microsecond=0)


def next_instant(spec: FrequencySpec,
                 time_of_day: datetime.time,
                 now: datetime.datetime | None = None,
                 tzinfo: datetime.tzinfo | None = None,
                 skip_today: bool = False) -> datetime.datetime:
    """
    Calculate the next instant at which a reminder with the given frequency should fire.

    - ``Once`` - the given date at ``time_of_day``. Rejected if it is not after the minimum lead time.
    - ``Daily`` - today at ``time_of_day``, or tomorrow if that is not after the minimum lead time.
    - ``Weekly`` - the first selected weekday (today included) whose ``time_of_day`` is after the minimum lead time.
    - ``Monthly`` - this month's day (clamped to the month's last day) at ``time_of_day``, else next month's.
    - ``Hourly`` - the next hour boundary after the minimum lead time.
    - ``Minutely`` / ``Custom`` - exactly ``now`` plus the interval.

    :param spec: the reminder's frequency.
    :param time_of_day: the local time of day at which calendar variants fire.
    :param now: the current instant (aware). Floored to the second. Defaults to the current time.
    :param tzinfo: the timezone for wall-clock arithmetic. Defaults to the local timezone.
    :param skip_today: if True, calendar variants never return an occurrence on today's date. Used after a reminder is
        completed, so completing ahead of time does not fire again the same day.

    :return: the next occurrence as a UTC datetime, never earlier than ``now`` plus the minimum lead time.

    :raises InvalidTimeError: if a ``Once`` reminder lies in the past.
    :raises ValidationError: if ``spec`` is not a recognised frequency.
    """
    now = _floor(now)
    tzinfo = tzinfo or helpers.local_timezone()
    threshold = now + BUFFER
    today = now.astimezone(tzinfo).date()
    start = 1 if skip_today else 0

    if isinstance(spec, Once):
        candidate = _at(spec.date, time_of_day, tzinfo)
        if candidate <= threshold:
            raise InvalidTimeError('One-off reminder time {} has already passed.'.format(
                helpers.DateUtil.convert('', candidate, helpers.DateUtil.ISO_DATETIME)))
    elif isinstance(spec, Daily):
        candidate = _at(today + datetime.timedelta(days=start), time_of_day, tzinfo)
        if candidate <= threshold:
            candidate = _at(today + datetime.timedelta(days=start + 1), time_of_day, tzinfo)
    elif isinstance(spec, Weekly):
        candidate = None
        for offset in range(start, start + 8):
            day = today + datetime.timedelta(days=offset)
            if day.isoweekday() not in spec.selected_days:
                continue
            at_day = _at(day, time_of_day, tzinfo)
            if at_day > threshold:
                candidate = at_day
                break
    elif isinstance(spec, Monthly):
        candidate = None
        first_of_month = today.replace(day=1)
        for months in range(0, 3):
            # relativedelta clamps an absolute day to the month's last valid day
            day = first_of_month + relativedelta(months=months, day=spec.day_of_month)
            if skip_today and day == today:
                continue
            at_day = _at(day, time_of_day, tzinfo)
            if at_day > threshold:
                candidate = at_day
                break
    elif isinstance(spec, Hourly):
        candidate = now.replace(minute=0, second=0) + datetime.timedelta(hours=1)
        if candidate < threshold:
            candidate += datetime.timedelta(hours=1)
    elif isinstance(spec, (Minutely, Custom)):
        candidate = now + spec.offset
    else:
        raise ValidationError('Unrecognised frequency: {!r}'.format(spec))

    if candidate is None:
        raise ValidationError('No occurrence found for {!r}.'.format(spec))
    return validate_schedule_time(candidate, now)


def validate_schedule_time(candidate: datetime.datetime,
                           now: datetime.datetime | None = None) -> datetime.datetime:
    """
    Enforce the minimum lead time.

    :param candidate: the proposed instant.
    :param now: the current instant. Defaults to the current time.

    :return: ``now`` plus the minimum lead time if ``candidate`` is earlier than that, otherwise ``candidate``.
    """
    now = _floor(now)
    if candidate < now + BUFFER:
        logging.debug('Schedule time {} is inside the minimum lead time, moved to {}'.format(candidate, now + BUFFER))
        return now + BUFFER
    return candidate


def adjust_for_time_conflicts(candidate: datetime.datetime,
                              now: datetime.datetime | None = None,
                              tzinfo: datetime.tzinfo | None = None) -> datetime.datetime:
    """
    Resolve a proposed instant which conflicts with the current time.

    A candidate in the past on today's calendar date is moved to the same wall-clock time tomorrow. Any other candidate
    is subject to the minimum lead time.

    :param candidate: the proposed instant.
    :param now: the current instant. Defaults to the current time.
    :param tzinfo: the timezone for wall-clock arithmetic. Defaults to the local timezone.

    :return: the adjusted instant.
    """
    now = _floor(now)
    tzinfo = tzinfo or helpers.local_timezone()
    if candidate < now:
        local_candidate = candidate.astimezone(tzinfo)
        if local_candidate.date() == now.astimezone(tzinfo).date():
            candidate = _at(local_candidate.date() + datetime.timedelta(days=1), local_candidate.time(), tzinfo)
            logging.debug('Schedule time already passed today, moved to {}'.format(candidate))
    return validate_schedule_time(candidate, now)


def calculate_precise_schedule_time(spec: FrequencySpec,
                                    time_of_day: datetime.time,
                                    now: datetime.datetime | None = None,
                                    tzinfo: datetime.tzinfo | None = None) -> datetime.datetime:
    """
    Calculate the schedule time, bypassing calendar rollover for offset-based frequencies so that "2 minutes from now"
    is always exactly two minutes from now.

    :param spec: the reminder's frequency.
    :param time_of_day: the local time of day at which calendar variants fire.
    :param now: the current instant. Defaults to the current time.
    :param tzinfo: the timezone for wall-clock arithmetic. Defaults to the local timezone.

    :return: the schedule time as a UTC datetime.
    """
    now = _floor(now)
    if isinstance(spec, (Minutely, Custom)):
        return validate_schedule_time(now + spec.offset, now)
    return next_instant(spec, time_of_day, now, tzinfo)


class OccurrenceCalculator:
    """
    Binds the occurrence functions to a timezone and a clock, so services can have them injected.
    """

    def __init__(self, tzinfo: datetime.tzinfo | None = None, clock=helpers.now):
        """
        :param tzinfo: the timezone for wall-clock arithmetic. Defaults to the local timezone.
        :param clock: callable returning the current aware datetime.
        """
        self.tzinfo: datetime.tzinfo = tzinfo or helpers.local_timezone()
        self.clock = clock

    def now(self) -> datetime.datetime:
        return _floor(self.clock())

    def next_instant(self, spec: FrequencySpec, time_of_day: datetime.time, skip_today: bool = False) \
            -> datetime.datetime:
        return next_instant(spec, time_of_day, self.now(), self.tzinfo, skip_today)

    def precise(self, spec: FrequencySpec, time_of_day: datetime.time) -> datetime.datetime:
        return calculate_precise_schedule_time(spec, time_of_day, self.now(), self.tzinfo)

    def describe(self, instant: datetime.datetime | None) -> str:
        return describe_instant(instant, self.now(), self.tzinfo)


WEEKDAYS = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']


def _format_time(instant: datetime.datetime) -> str:
    hour = instant.hour
    period = 'PM' if hour >= 12 else 'AM'
    display_hour = hour - 12 if hour > 12 else (12 if hour == 0 else hour)
    return '{}:{:02d} {}'.format(display_hour, instant.minute, period)


def describe_instant(instant: datetime.datetime | None,
                     now: datetime.datetime | None = None,
                     tzinfo: datetime.tzinfo | None = None) -> str:
    """
    Describe an occurrence relative to now, for display.

    :param instant: the occurrence.
    :param now: the current instant. Defaults to the current time.
    :param tzinfo: the timezone the description is given in. Defaults to the local timezone.

    :return: a string such as ``In 5 minutes``, ``Tomorrow at 9:00 AM`` or ``Overdue``.
    """
    if instant is None:
        return ''
    now = _floor(now)
    tzinfo = tzinfo or helpers.local_timezone()
    difference = instant - now
    local = instant.astimezone(tzinfo)
    days_ahead = (local.date() - now.astimezone(tzinfo).date()).days

    if difference < datetime.timedelta(0):
        return 'Overdue'
    minutes = int(difference.total_seconds() // 60)
    if minutes < 1:
        return 'Now'
    if minutes < 60:
        return 'In 1 minute' if minutes == 1 else 'In {} minutes'.format(minutes)
    hours = minutes // 60
    if hours < 12:
        return 'In 1 hour' if hours == 1 else 'In {} hours'.format(hours)
    if days_ahead == 0:
        return 'Today at {}'.format(_format_time(local))
    if days_ahead == 1:
        return 'Tomorrow at {}'.format(_format_time(local))
    if days_ahead < 7:
        return '{} at {}'.format(WEEKDAYS[local.weekday()], _format_time(local))
    return '{}/{}/{} at {}'.format(local.day, local.month, local.year, _format_time(local))


def time_remaining_minutes(instant: datetime.datetime | None, now: datetime.datetime | None = None) -> int:
    """
    :return: whole minutes until ``instant``, ``-1`` if it is overdue, or ``0`` if there is no instant.
    """
    if instant is None:
        return 0
    difference = instant - _floor(now)
    if difference < datetime.timedelta(0):
        return -1
    return int(difference.total_seconds() // 60)
