"""
Contains the ``CalDavRemoteStore`` class, which keeps reminders as *VTODO* tasks on a CalDav calendar.

Each reminder becomes one task whose UID is ``remindsync-<user>-<id>``. The summary, description, status and due date are
filled in so other CalDav clients can show the task, and the full reminder snapshot is kept in the
``X-REMINDSYNC-PAYLOAD`` property so it can be read back field-for-field.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

import caldav
import icalendar
import keyring
from caldav import Calendar
from caldav.lib import error as caldav_error

from remindsync import helpers, settings
from remindsync.errors import AuthenticationError, NotFoundError, classify
from remindsync.helpers import DateUtil
from remindsync.reminders.model.remote import RemoteStore, _require_id

PAYLOAD_PROPERTY = 'X-REMINDSYNC-PAYLOAD'

#: Errors raised by the CalDav client and its HTTP transport.
_CLIENT_ERRORS = (caldav_error.DAVError, OSError, ValueError)


class CalDavRemoteStore(RemoteStore):
    """
    Remote store backed by a CalDav calendar supporting *VTODO* components.
    """

    def __init__(self, url: str, username: str, calendar_name: str = 'RemindSync', password: str | None = None,
                 timeout: int | None = None):
        """
        Create a new CalDav remote store. No connection is made until the first call.

        :param url: the CalDav server URL.
        :param username: the CalDav username.
        :param calendar_name: the task calendar holding the reminders. Created if missing.
        :param password: the CalDav password. Defaults to the password saved in the keyring.
        :param timeout: HTTP timeout in seconds.
        """
        self.url: str = url
        self.username: str = username
        self.calendar_name: str = calendar_name
        self.password: str | None = password
        self.timeout: int | None = timeout
        self._calendar: Calendar | None = None

    @staticmethod
    def uid(user_id: str, reminder_id: int) -> str:
        return 'remindsync-{}-{}'.format(user_id, reminder_id)

    def connect(self) -> Calendar:
        """
        Connect to the CalDav server and find the task calendar, creating it if it does not exist.

        :return: the task calendar.

        :raises AuthenticationError: if no password is available or the server rejects the credentials.
        """
        if self._calendar is not None:
            return self._calendar
        password = self.password or keyring.get_password(settings.KEYRING_SERVICE, settings.KEYRING_CALDAV_PASSWORD)
        if not password:
            raise AuthenticationError('No CalDav password in keyring.')
        try:
            client = caldav.DAVClient(url=self.url, username=self.username, password=password, timeout=self.timeout)
            principal = client.principal()
            try:
                calendar = principal.calendar(name=self.calendar_name)
                calendar.get_supported_components()
            except caldav_error.NotFoundError:
                logging.info('Creating remote calendar {}'.format(self.calendar_name))
                calendar = principal.make_calendar(self.calendar_name, supported_calendar_component_set=['VTODO'])
        except caldav_error.AuthorizationError as e:
            raise AuthenticationError('CalDav login failed: {}'.format(e)) from e
        except _CLIENT_ERRORS as e:
            raise classify(e) from e
        logging.debug('Connected to remote calendar {}'.format(self.calendar_name))
        self._calendar = calendar
        return calendar

    def _find(self, user_id: str, reminder_id: int) -> caldav.Todo | None:
        tasks = self.connect().search(todo=True, include_completed=True, uid=self.uid(user_id, reminder_id))
        return tasks[0] if len(tasks) > 0 else None

    def _fill(self, component: icalendar.Todo, user_id: str, record: Dict[str, Any]) -> None:
        """
        Write a reminder snapshot into a *VTODO* component.
        """
        for key in ('uid', 'summary', 'description', 'status', 'due', 'dtstamp', 'last-modified', PAYLOAD_PROPERTY):
            component.pop(key, None)
        completed = record.get('status') == 'completed'
        modified = DateUtil.convert(DateUtil.ISO_DATETIME, record.get('updated_at')) or helpers.now()
        component.add('uid', self.uid(user_id, record['id']))
        component.add('summary', record['title'])
        if record.get('description'):
            component.add('description', record['description'])
        component.add('status', 'COMPLETED' if completed else 'NEEDS-ACTION')
        due = DateUtil.convert(DateUtil.ISO_DATETIME, record.get('next_occurrence_instant'))
        if due is not None and not completed:
            component.add('due', due)
        component.add('dtstamp', modified)
        component.add('last-modified', modified)
        component.add(PAYLOAD_PROPERTY, json.dumps(record, sort_keys=True))

    def get_ical_string(self, user_id: str, record: Dict[str, Any]) -> str:
        """
        Returns a representation of a reminder snapshot as an iCal string.

        :param user_id: the owner of the record.
        :param record: the reminder snapshot.

        :return: the iCal string.
        """
        cal = icalendar.Calendar()
        cal.add('prodid', '-//RemindSync//RemindSync//EN')
        cal.add('version', '2.0')
        todo = icalendar.Todo()
        self._fill(todo, user_id, record)
        cal.add_component(todo)
        return cal.to_ical().decode()

    @staticmethod
    def _payload(task: caldav.Todo) -> Dict[str, Any] | None:
        payload = task.icalendar_component.get(PAYLOAD_PROPERTY)
        return json.loads(str(payload)) if payload is not None else None

    def insert(self, user_id: str, record: Dict[str, Any]) -> None:
        reminder_id = _require_id(record)
        try:
            existing = self._find(user_id, reminder_id)
            if existing is None:
                self.connect().save_todo(ical=self.get_ical_string(user_id, record))
            else:
                self._fill(existing.icalendar_component, user_id, record)
                existing.save()
        except _CLIENT_ERRORS as e:
            raise classify(e, reminder_id) from e
        logging.debug('Remote reminder added: {}'.format(record['title']))

    def update(self, user_id: str, record: Dict[str, Any]) -> None:
        reminder_id = _require_id(record)
        try:
            existing = self._find(user_id, reminder_id)
            if existing is None:
                raise NotFoundError('Remote reminder {} not found'.format(reminder_id), reminder_id)
            self._fill(existing.icalendar_component, user_id, record)
            existing.save()
        except _CLIENT_ERRORS as e:
            raise classify(e, reminder_id) from e
        logging.debug('Remote reminder updated: {}'.format(record['title']))

    def delete(self, user_id: str, reminder_id: int) -> None:
        try:
            existing = self._find(user_id, reminder_id)
            if existing is None:
                raise NotFoundError('Remote reminder {} not found'.format(reminder_id), reminder_id)
            existing.delete()
        except _CLIENT_ERRORS as e:
            raise classify(e, reminder_id) from e
        logging.debug('Remote reminder deleted: {}'.format(reminder_id))

    def select(self, user_id: str, reminder_id: int) -> Dict[str, Any]:
        try:
            existing = self._find(user_id, reminder_id)
        except _CLIENT_ERRORS as e:
            raise classify(e, reminder_id) from e
        payload = self._payload(existing) if existing is not None else None
        if payload is None:
            raise NotFoundError('Remote reminder {} not found'.format(reminder_id), reminder_id)
        return payload

    def select_all(self, user_id: str) -> List[Dict[str, Any]]:
        prefix = 'remindsync-{}-'.format(user_id)
        try:
            tasks = self.connect().search(todo=True, include_completed=True)
        except _CLIENT_ERRORS as e:
            raise classify(e) from e
        records = []
        for task in tasks:
            if not str(task.icalendar_component.get('uid', '')).startswith(prefix):
                continue
            payload = self._payload(task)
            if payload is not None:
                records.append(payload)
        return sorted(records, key=lambda r: r['id'])
