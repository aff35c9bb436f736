import datetime
from unittest import mock

import icalendar
import pytest
from caldav.lib import error as caldav_error

from remindsync import settings
from remindsync.errors import AuthenticationError, NetworkError, NotFoundError
from remindsync.reminders.model.caldavstore import PAYLOAD_PROPERTY, CalDavRemoteStore
from remindsync.reminders.model.frequency import Daily
from remindsync.reminders.model.reminder import Reminder

UTC = datetime.timezone.utc
NOW = datetime.datetime(2026, 3, 11, 10, 0, tzinfo=UTC)
URL = 'https://dav.example.com/'


def record(reminder_id=1, title='Water the plants', **changes) -> dict:
    reminder = Reminder(reminder_id, title, 'home', Daily(), datetime.time(9, 0), description='Balcony too',
                        next_occurrence_instant=NOW + datetime.timedelta(days=1), updated_at=NOW)
    data = reminder.to_dict()
    data.update(changes)
    return data


def task_for(store: CalDavRemoteStore, user_id: str, data: dict) -> mock.Mock:
    todo = icalendar.Todo()
    store._fill(todo, user_id, data)
    task = mock.Mock()
    task.icalendar_component = todo
    return task


@pytest.fixture
def calendar():
    return mock.Mock()


@pytest.fixture
def dav_client(calendar):
    with mock.patch('caldav.DAVClient') as client_class:
        client_class.return_value.principal.return_value.calendar.return_value = calendar
        yield client_class


@pytest.fixture
def caldav_store(dav_client):
    return CalDavRemoteStore(URL, 'alice', password='secret', timeout=10)


class TestCalDavRemoteStore:

    def test_connect(self, caldav_store, dav_client, calendar):
        assert caldav_store.connect() is calendar
        dav_client.assert_called_once_with(url=URL, username='alice', password='secret', timeout=10)
        dav_client.return_value.principal.return_value.calendar.assert_called_once_with(name='RemindSync')
        assert caldav_store.connect() is calendar
        assert dav_client.call_count == 1

    @mock.patch('keyring.get_password', return_value='from-keyring')
    def test_connect_uses_keyring(self, mock_get, dav_client):
        CalDavRemoteStore(URL, 'alice').connect()
        mock_get.assert_called_once_with(settings.KEYRING_SERVICE, settings.KEYRING_CALDAV_PASSWORD)
        assert dav_client.call_args.kwargs['password'] == 'from-keyring'

    @mock.patch('keyring.get_password', return_value=None)
    def test_connect_without_password(self, mock_get, dav_client):
        with pytest.raises(AuthenticationError):
            CalDavRemoteStore(URL, 'alice').connect()
        dav_client.assert_not_called()

    def test_connect_creates_calendar(self, caldav_store, dav_client):
        principal = dav_client.return_value.principal.return_value
        principal.calendar.return_value.get_supported_components.side_effect = caldav_error.NotFoundError('404')
        assert caldav_store.connect() is principal.make_calendar.return_value
        principal.make_calendar.assert_called_once_with('RemindSync', supported_calendar_component_set=['VTODO'])

    def test_connect_rejected(self, caldav_store, dav_client):
        dav_client.return_value.principal.side_effect = caldav_error.AuthorizationError('401')
        with pytest.raises(AuthenticationError):
            caldav_store.connect()

    def test_connect_unreachable(self, caldav_store, dav_client):
        dav_client.return_value.principal.side_effect = ConnectionError('unreachable')
        with pytest.raises(NetworkError):
            caldav_store.connect()

    def test_get_ical_string(self, caldav_store):
        ical = caldav_store.get_ical_string('alice', record())
        parsed = icalendar.Calendar.from_ical(ical)
        todo = parsed.walk('VTODO')[0]
        assert str(todo['UID']) == 'remindsync-alice-1'
        assert str(todo['SUMMARY']) == 'Water the plants'
        assert str(todo['DESCRIPTION']) == 'Balcony too'
        assert str(todo['STATUS']) == 'NEEDS-ACTION'
        assert todo.decoded('DUE') == NOW + datetime.timedelta(days=1)
        assert str(todo[PAYLOAD_PROPERTY]).startswith('{')

    def test_completed_task(self, caldav_store):
        ical = caldav_store.get_ical_string('alice', record(status='completed'))
        todo = icalendar.Calendar.from_ical(ical).walk('VTODO')[0]
        assert str(todo['STATUS']) == 'COMPLETED'
        assert 'DUE' not in todo

    def test_insert_new(self, caldav_store, calendar):
        calendar.search.return_value = []
        caldav_store.insert('alice', record())
        calendar.search.assert_called_once_with(todo=True, include_completed=True, uid='remindsync-alice-1')
        ical = calendar.save_todo.call_args.kwargs['ical']
        assert 'UID:remindsync-alice-1' in ical

    def test_insert_existing_overwrites(self, caldav_store, calendar):
        task = task_for(caldav_store, 'alice', record())
        calendar.search.return_value = [task]
        caldav_store.insert('alice', record(title='Water the cactus'))
        calendar.save_todo.assert_not_called()
        task.save.assert_called_once()
        assert str(task.icalendar_component['SUMMARY']) == 'Water the cactus'

    def test_update(self, caldav_store, calendar):
        task = task_for(caldav_store, 'alice', record())
        calendar.search.return_value = [task]
        caldav_store.update('alice', record(title='Water the cactus'))
        task.save.assert_called_once()
        assert caldav_store.select('alice', 1)['title'] == 'Water the cactus'

    def test_update_missing(self, caldav_store, calendar):
        calendar.search.return_value = []
        with pytest.raises(NotFoundError):
            caldav_store.update('alice', record())

    def test_delete(self, caldav_store, calendar):
        task = task_for(caldav_store, 'alice', record())
        calendar.search.return_value = [task]
        caldav_store.delete('alice', 1)
        task.delete.assert_called_once()

        calendar.search.return_value = []
        with pytest.raises(NotFoundError):
            caldav_store.delete('alice', 1)

    def test_select(self, caldav_store, calendar):
        calendar.search.return_value = [task_for(caldav_store, 'alice', record())]
        assert caldav_store.select('alice', 1) == record()

        calendar.search.return_value = []
        with pytest.raises(NotFoundError):
            caldav_store.select('alice', 1)

    def test_select_all(self, caldav_store, calendar):
        foreign = mock.Mock()
        foreign.icalendar_component = icalendar.Todo()
        foreign.icalendar_component.add('uid', 'someone-elses-task')
        calendar.search.return_value = [
            task_for(caldav_store, 'alice', record(2, 'Second')),
            task_for(caldav_store, 'bob', record(3, 'Not mine')),
            foreign,
            task_for(caldav_store, 'alice', record(1, 'First')),
        ]
        result = caldav_store.select_all('alice')
        assert [r['title'] for r in result] == ['First', 'Second']

    def test_network_failure_classified(self, caldav_store, calendar):
        calendar.search.side_effect = ConnectionResetError('reset')
        with pytest.raises(NetworkError) as raised:
            caldav_store.select('alice', 1)
        assert raised.value.reminder_id == 1
