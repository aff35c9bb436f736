"""
Contains the ``RemoteStore`` interface consumed by the sync engine, and ``MemoryRemoteStore``, an in-process remote store
used in tests and by applications embedding the engine.

Every remote call either returns normally or raises a :py:class:`remindsync.errors.ReminderError` whose kind is one of
network, timeout, authentication, validation, server or not-found.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from remindsync.errors import NotFoundError, ReminderError, ValidationError


class RemoteStore(ABC):
    """
    The remote store, keyed by reminder id and user id.
    """

    @abstractmethod
    def insert(self, user_id: str, record: Dict[str, Any]) -> None:
        """
        Store a new record. Inserting a record which already exists replaces it, so replaying an insert is idempotent.

        :param user_id: the owner of the record.
        :param record: the reminder snapshot. Must carry an ``id``.
        """

    @abstractmethod
    def update(self, user_id: str, record: Dict[str, Any]) -> None:
        """
        Replace a stored record.

        :param user_id: the owner of the record.
        :param record: the reminder snapshot. Must carry an ``id``.

        :raises NotFoundError: if no record with this id exists.
        """

    @abstractmethod
    def delete(self, user_id: str, reminder_id: int) -> None:
        """
        Remove a stored record.

        :param user_id: the owner of the record.
        :param reminder_id: the id of the record.

        :raises NotFoundError: if no record with this id exists.
        """

    @abstractmethod
    def select(self, user_id: str, reminder_id: int) -> Dict[str, Any]:
        """
        :param user_id: the owner of the record.
        :param reminder_id: the id of the record.

        :return: the stored record.

        :raises NotFoundError: if no record with this id exists.
        """

    @abstractmethod
    def select_all(self, user_id: str) -> List[Dict[str, Any]]:
        """
        :param user_id: the owner of the records.

        :return: every record stored for the user.
        """


def _require_id(record: Dict[str, Any]) -> int:
    if record.get('id') is None:
        raise ValidationError('Remote record has no id.')
    return record['id']


class MemoryRemoteStore(RemoteStore):
    """
    A remote store held in memory. Failures can be queued with ``fail_next`` to simulate an unreliable connection.
    """

    def __init__(self):
        self.records: Dict[tuple[str, int], Dict[str, Any]] = {}
        self.calls: List[tuple[str, int | None]] = []
        self._failures: List[ReminderError] = []
        self._lock = threading.Lock()

    def fail_next(self, *failures: ReminderError) -> None:
        """
        Make the next remote calls raise the given errors, one per call, in order.

        :param failures: the errors to raise.
        """
        with self._lock:
            self._failures.extend(failures)

    def _call(self, name: str, reminder_id: int | None = None) -> None:
        with self._lock:
            self.calls.append((name, reminder_id))
            if self._failures:
                raise self._failures.pop(0)

    def insert(self, user_id: str, record: Dict[str, Any]) -> None:
        reminder_id = _require_id(record)
        self._call('insert', reminder_id)
        self.records[(user_id, reminder_id)] = copy.deepcopy(record)

    def update(self, user_id: str, record: Dict[str, Any]) -> None:
        reminder_id = _require_id(record)
        self._call('update', reminder_id)
        if (user_id, reminder_id) not in self.records:
            raise NotFoundError('Remote reminder {} not found'.format(reminder_id), reminder_id)
        self.records[(user_id, reminder_id)] = copy.deepcopy(record)

    def delete(self, user_id: str, reminder_id: int) -> None:
        self._call('delete', reminder_id)
        if self.records.pop((user_id, reminder_id), None) is None:
            raise NotFoundError('Remote reminder {} not found'.format(reminder_id), reminder_id)

    def select(self, user_id: str, reminder_id: int) -> Dict[str, Any]:
        self._call('select', reminder_id)
        try:
            return copy.deepcopy(self.records[(user_id, reminder_id)])
        except KeyError:
            raise NotFoundError('Remote reminder {} not found'.format(reminder_id), reminder_id) from None

    def select_all(self, user_id: str) -> List[Dict[str, Any]]:
        self._call('select_all')
        return [copy.deepcopy(r) for (owner, _), r in sorted(self.records.items(), key=lambda i: i[0][1])
                if owner == user_id]
