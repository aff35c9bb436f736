"""
Contains the ``FrequencySpec`` closed union describing how a reminder repeats, together with the conversion from the
stored dictionary shape and the one-time migration of legacy payloads.

Calendar variants (``Once``, ``Daily``, ``Weekly``, ``Monthly``) are anchored to a time of day and use wall-clock
arithmetic. Offset variants (``Hourly``, ``Minutely``, ``Custom``) are relative to the moment they are calculated.
"""

from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass
from typing import Any, Dict, Union

from remindsync.errors import ValidationError
from remindsync.helpers import DateUtil


class IntervalUnit(enum.Enum):
    """
    Units accepted by a ``Custom`` frequency.
    """

    MINUTES = 'minutes'
    HOURS = 'hours'
    DAYS = 'days'

    def delta(self, interval: int) -> datetime.timedelta:
        return datetime.timedelta(**{self.value: interval})


@dataclass(frozen=True)
class Once:
    """Fires a single time, on ``date`` at the reminder's time of day."""
    date: datetime.date

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'once', 'date': DateUtil.convert('', self.date, DateUtil.ISO_DATE)}


@dataclass(frozen=True)
class Daily:
    """Fires every day at the reminder's time of day."""

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'daily'}


@dataclass(frozen=True)
class Weekly:
    """Fires on each selected ISO weekday (1 = Monday, 7 = Sunday) at the reminder's time of day."""
    selected_days: frozenset

    def __post_init__(self):
        days = frozenset(self.selected_days)
        if not days:
            raise ValidationError('A weekly frequency needs at least one selected day.')
        if any(not isinstance(d, int) or isinstance(d, bool) or d < 1 or d > 7 for d in days):
            raise ValidationError('Weekly days must be ISO weekdays 1-7, got {}.'.format(sorted(days, key=str)))
        object.__setattr__(self, 'selected_days', days)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'weekly', 'selected_days': sorted(self.selected_days)}


@dataclass(frozen=True)
class Monthly:
    """Fires on ``day_of_month``, clamped to the last day of shorter months."""
    day_of_month: int

    def __post_init__(self):
        if not isinstance(self.day_of_month, int) or not 1 <= self.day_of_month <= 31:
            raise ValidationError('Day of month must be between 1 and 31, got {}.'.format(self.day_of_month))

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'monthly', 'day_of_month': self.day_of_month}


@dataclass(frozen=True)
class Hourly:
    """Fires at every hour boundary."""

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'hourly'}


@dataclass(frozen=True)
class Minutely:
    """Fires ``minutes`` after it is calculated."""
    minutes: int = 1

    def __post_init__(self):
        if not isinstance(self.minutes, int) or self.minutes < 1:
            raise ValidationError('Minutely frequency needs a positive number of minutes, got {}.'.format(self.minutes))

    @property
    def offset(self) -> datetime.timedelta:
        return datetime.timedelta(minutes=self.minutes)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'minutely', 'minutes': self.minutes}


@dataclass(frozen=True)
class Custom:
    """Fires ``interval`` units after it is calculated."""
    interval: int
    unit: IntervalUnit

    def __post_init__(self):
        if not isinstance(self.interval, int) or isinstance(self.interval, bool) or self.interval < 1:
            raise ValidationError('Custom interval must be a positive integer, got {}.'.format(self.interval))
        if not isinstance(self.unit, IntervalUnit):
            try:
                object.__setattr__(self, 'unit', IntervalUnit(self.unit))
            except ValueError:
                raise ValidationError('Unknown interval unit {}.'.format(self.unit)) from None

    @property
    def offset(self) -> datetime.timedelta:
        return self.unit.delta(self.interval)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'custom', 'interval': self.interval, 'unit': self.unit.value}


FrequencySpec = Union[Once, Daily, Weekly, Monthly, Hourly, Minutely, Custom]

#: Variants whose next occurrence is a fixed offset from now.
OFFSET_VARIANTS = (Hourly, Minutely, Custom)


def is_recurring(spec: FrequencySpec) -> bool:
    """
    :return: True unless the frequency fires only once.
    """
    return not isinstance(spec, Once)


def from_dict(data: Dict[str, Any]) -> FrequencySpec:
    """
    Build a frequency from its canonical dictionary shape (``{'type': ..., <snake_case fields>}``).

    :param data: the stored frequency.

    :return: the matching :py:class:`FrequencySpec` variant.

    :raises ValidationError: if the type is unknown or a field is missing or invalid.
    """
    if not isinstance(data, dict):
        raise ValidationError('Frequency must be a dictionary, got {}.'.format(type(data).__name__))
    kind = data.get('type')
    try:
        if kind == 'once':
            return Once(DateUtil.convert(DateUtil.ISO_DATE, data['date']))
        if kind == 'daily':
            return Daily()
        if kind == 'weekly':
            return Weekly(frozenset(data['selected_days']))
        if kind == 'monthly':
            return Monthly(data['day_of_month'])
        if kind == 'hourly':
            return Hourly()
        if kind == 'minutely':
            return Minutely(data.get('minutes', 1))
        if kind == 'custom':
            return Custom(data['interval'], data['unit'])
    except KeyError as e:
        raise ValidationError('Frequency {} is missing field {}.'.format(kind, e)) from None
    except (TypeError, ValueError) as e:
        raise ValidationError('Frequency {} is invalid: {}'.format(kind, e)) from None
    raise ValidationError('Unrecognised frequency type: {}'.format(kind))


#: Legacy field names and their canonical equivalents.
LEGACY_FIELDS = {
    'id': 'type',
    'intervalValue': 'interval',
    'intervalUnit': 'unit',
    'selectedDays': 'selected_days',
    'dayOfMonth': 'day_of_month',
    'minutesFromNow': 'minutes',
}


def is_legacy(data: Dict[str, Any]) -> bool:
    """
    :return: True if the stored frequency uses any of the legacy field names.
    """
    return any(key in data for key in LEGACY_FIELDS)


def migrate_frequency(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a legacy frequency payload to the canonical shape. Canonical payloads are returned unchanged.

    Legacy payloads may name the variant with ``id`` instead of ``type``, and use camelCase field names such as
    ``intervalValue``/``intervalUnit``, ``selectedDays``, ``dayOfMonth`` and ``minutesFromNow``. Where both a legacy
    and a canonical name are present, the canonical one wins.

    :param data: the stored frequency.

    :return: the frequency in canonical shape, validated.

    :raises ValidationError: if the payload does not describe a known frequency.
    """
    if not isinstance(data, dict):
        raise ValidationError('Frequency must be a dictionary, got {}.'.format(type(data).__name__))
    migrated = {}
    for key, value in data.items():
        canonical = LEGACY_FIELDS.get(key, key)
        if canonical != key and canonical in data:
            continue
        migrated[canonical] = value
    return from_dict(migrated).to_dict()
