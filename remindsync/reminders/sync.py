"""
Contains the ``SyncEngine`` class, which drains the sync queue against the remote store and pulls remote changes back
into the local store, and the conflict resolution strategies it applies.
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Any, Callable, Dict, List, TypeVar

from remindsync.errors import (AuthenticationError, NotFoundError, ReminderError, ValidationError, log_error)
from remindsync.helpers import DateUtil
from remindsync.reminders.model.localstore import LocalStore
from remindsync.reminders.model.reminder import Reminder
from remindsync.reminders.model.remote import RemoteStore
from remindsync.reminders.model.syncqueue import SyncOperation, SyncQueueEntry
from remindsync.reminders.retry import RetryPolicy, StatusCallback
from remindsync.session import Session

T = TypeVar('T')


class ConflictStrategy(enum.Enum):
    """
    How a disagreement between the local and the remote copy of a reminder is resolved.
    """

    USE_LOCAL = 'use_local'
    USE_REMOTE = 'use_remote'
    USE_LATEST = 'use_latest'
    MERGE = 'merge'


#: Fields for which the local copy is authoritative under the ``MERGE`` strategy.
MERGE_LOCAL_FIELDS = ('status', 'completion_count', 'last_completed')


def resolve_conflict(local: Dict[str, Any], remote: Dict[str, Any], strategy: ConflictStrategy) -> Dict[str, Any]:
    """
    Resolve a conflict between two copies of a reminder.

    - ``USE_LOCAL`` - the local copy wins.
    - ``USE_REMOTE`` - the remote copy wins.
    - ``USE_LATEST`` - the copy with the later ``updated_at`` wins. The local copy wins ties.
    - ``MERGE`` - the remote copy, with the status and completion fields taken from the local copy. The result carries
      the later of the two ``updated_at`` values.

    :param local: the local reminder snapshot.
    :param remote: the remote reminder snapshot.
    :param strategy: the strategy to apply.

    :return: the resolved reminder snapshot.
    """
    if strategy == ConflictStrategy.USE_LOCAL:
        return local
    if strategy == ConflictStrategy.USE_REMOTE:
        return remote

    local_updated = DateUtil.convert(DateUtil.ISO_DATETIME, local.get('updated_at'))
    remote_updated = DateUtil.convert(DateUtil.ISO_DATETIME, remote.get('updated_at'))
    if strategy == ConflictStrategy.USE_LATEST:
        if remote_updated is not None and (local_updated is None or remote_updated > local_updated):
            return remote
        return local

    merged = dict(remote)
    for field in MERGE_LOCAL_FIELDS:
        if field in local:
            merged[field] = local[field]
    latest = max((t for t in (local_updated, remote_updated) if t is not None), default=None)
    merged['updated_at'] = DateUtil.convert('', latest, DateUtil.ISO_DATETIME)
    return merged


class SyncEngine:
    """
    Replays the sync queue against the remote store and reconciles remote changes into the local store. Every remote call
    goes through ``retry_with_auth``.
    """

    def __init__(self,
                 store: LocalStore,
                 remote: RemoteStore,
                 session: Session,
                 retry_policy: RetryPolicy | None = None,
                 strategy: ConflictStrategy = ConflictStrategy.USE_LATEST):
        """
        :param store: the local store, which is the source of truth.
        :param remote: the remote store.
        :param session: the session provider used to validate each remote call.
        :param retry_policy: the retry policy for remote calls.
        :param strategy: the default conflict resolution strategy.
        """
        self.store: LocalStore = store
        self.remote: RemoteStore = remote
        self.session: Session = session
        self.retry_policy: RetryPolicy = retry_policy or RetryPolicy()
        self.strategy: ConflictStrategy = strategy
        self._sync_lock = threading.Lock()

    def validate_session(self) -> None:
        """
        Make sure the session may be used for remote calls, refreshing it once if needed.

        :raises AuthenticationError: if the session is invalid and cannot be refreshed.
        """
        if self.session.is_valid():
            return
        logging.info('Session for {} expired, refreshing'.format(self.session.current_user()))
        if not self.session.refresh():
            raise AuthenticationError('Session is invalid and could not be refreshed.', transient=False)

    def retry_with_auth(self, operation: Callable[[], T], name: str = 'Remote operation',
                        on_status: StatusCallback | None = None) -> T:
        """
        Validate the session, then run a remote operation under the retry policy. A transient authentication failure
        refreshes the session once before the operation is retried; a second one, or a failed refresh, is final.

        :param operation: the remote operation.
        :param name: the name of the operation, for progress messages and logs.
        :param on_status: receives progress messages.

        :return: the result of the operation.

        :raises ReminderError: if the operation ultimately fails.
        """
        try:
            self.validate_session()
        except AuthenticationError as e:
            message = log_error(e, name)
            if on_status is not None:
                on_status(message)
            raise

        refreshed = []

        def on_retry(err: ReminderError) -> None:
            if not isinstance(err, AuthenticationError):
                return
            if refreshed or not self.session.refresh():
                raise AuthenticationError('Session could not be refreshed: {}'.format(err.message), err.reminder_id,
                                          transient=False)
            refreshed.append(True)

        return self.retry_policy.run(operation, name, on_status, on_retry)

    def retry_operation_with_feedback(self, operation: Callable[[], T], name: str,
                                      on_status: StatusCallback | None = None) -> tuple[bool, str] | tuple[bool, T]:
        """
        Run a remote operation, reporting live progress through ``on_status``.

        :param operation: the remote operation.
        :param name: the name of the operation.
        :param on_status: receives progress messages.

        :returns:

            -success (:py:class:`bool`) - true if the operation succeeds.

            -data (:py:class:`str` | result) - user-facing error message on failure, or the result of the operation.

        """
        try:
            return True, self.retry_with_auth(operation, name, on_status)
        except ReminderError as e:
            return False, '{} failed: {}'.format(name, e.user_message)

    def _replay(self, entry: SyncQueueEntry, user_id: str, strategy: ConflictStrategy) -> Dict[str, Any] | None:
        """
        Apply one queue entry to the remote store.

        :return: the resolved reminder snapshot if it differs from the local one, else None.
        """
        if entry.operation == SyncOperation.INSERT:
            self.remote.insert(user_id, entry.payload)
            return None

        if entry.operation == SyncOperation.DELETE:
            try:
                self.remote.delete(user_id, entry.reminder_id)
            except NotFoundError:
                logging.debug('Remote reminder {} already deleted'.format(entry.reminder_id))
            return None

        try:
            remote = self.remote.select(user_id, entry.reminder_id)
        except NotFoundError:
            self.remote.insert(user_id, entry.payload)
            return None
        resolved = resolve_conflict(entry.payload, remote, strategy)
        if resolved != entry.payload:
            logging.info('Conflict on reminder {} resolved with {}'.format(entry.reminder_id, strategy.value))
        if resolved != remote:
            self.remote.update(user_id, resolved)
        return resolved if resolved != entry.payload else None

    def push(self, strategy: ConflictStrategy | None = None, on_status: StatusCallback | None = None,
             force: bool = False) -> Dict[str, Any]:
        """
        Replay pending queue entries, oldest first. An entry is removed from the queue only once the remote store has
        acknowledged it; a failed entry is kept, and held back for a growing delay.

        :param strategy: the conflict resolution strategy. Defaults to the engine's strategy.
        :param on_status: receives progress messages.
        :param force: if True, entries still waiting for their backoff delay are replayed too.

        :return: a dictionary with the number of entries ``pushed`` and ``failed``, and the ids of reminders ``changed``
            locally by conflict resolution.

        :raises AuthenticationError: if the session cannot be used. The remaining entries stay queued.
        """
        strategy = strategy or self.strategy
        user_id = self.session.current_user()
        success, data = self.store.pending_entries(include_waiting=force)
        if not success:
            raise ValidationError(data)

        result = {'pushed': 0, 'failed': 0, 'changed': []}
        for entry in data:
            name = 'Sync {}'.format(entry)
            try:
                resolved = self.retry_with_auth(
                    lambda queued=entry: self._replay(queued, user_id, strategy), name, on_status)
            except AuthenticationError as e:
                self.store.mark_failed(entry, str(e), permanent=False)
                raise
            except ReminderError as e:
                self.store.mark_failed(entry, str(e), permanent=not e.retryable)
                result['failed'] += 1
                continue
            self.store.acknowledge(entry)
            result['pushed'] += 1
            if resolved is not None:
                success, changed = self.store.apply_remote(Reminder.from_dict(resolved), force=True)
                if success and changed:
                    result['changed'].append(entry.reminder_id)
        return result

    def pull(self, on_status: StatusCallback | None = None) -> List[int]:
        """
        Reconcile remote records into the local store. A local reminder with an unflushed queue entry or a strictly newer
        local timestamp is left alone.

        :param on_status: receives progress messages.

        :return: the ids of reminders changed locally.
        """
        user_id = self.session.current_user()
        records = self.retry_with_auth(lambda: self.remote.select_all(user_id), 'Pull reminders', on_status)
        changed = []
        for record in records:
            try:
                reminder = Reminder.from_dict(record)
            except ValidationError as e:
                log_error(e, 'Pull reminder {}'.format(record.get('id')))
                continue
            success, data = self.store.apply_remote(reminder)
            if not success:
                logging.error(data)
            elif data:
                changed.append(reminder.id)
        return changed

    def sync_now(self, strategy: ConflictStrategy | None = None, on_status: StatusCallback | None = None,
                 force: bool = True) -> tuple[bool, str] | tuple[bool, Dict[str, Any]]:
        """
        Run a full sync pass: push the queue, then pull remote changes. Only one pass runs at a time.

        :param strategy: the conflict resolution strategy for this pass. Defaults to the engine's strategy.
        :param on_status: receives progress messages.
        :param force: if True, entries still waiting for their backoff delay are replayed too.

        :returns:

            -success (:py:class:`bool`) - true if the pass completes.

            -data (:py:class:`str` | :py:class:`dict`) - user-facing error message on failure, or a summary with the
            keys ``pushed``, ``failed``, ``pulled`` and ``changed``.

        """
        if not self._sync_lock.acquire(blocking=False):
            return False, 'Sync already in progress'
        try:
            result = self.push(strategy, on_status, force)
            pulled = self.pull(on_status)
        except ReminderError as e:
            return False, 'Sync failed: {}'.format(e.user_message)
        finally:
            self._sync_lock.release()

        result['pulled'] = len(pulled)
        result['changed'] = sorted(set(result['changed']) | set(pulled))
        self.store.set_last_sync_time(self.store.clock())
        logging.info('Sync completed: {} pushed, {} failed, {} changed locally'.format(
            result['pushed'], result['failed'], len(result['changed'])))
        return True, result
