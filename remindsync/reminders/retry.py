"""
Contains the ``RetryPolicy`` class, which runs remote operations with exponential backoff, jitter and a timeout on each
attempt.
"""

from __future__ import annotations

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Callable, TypeVar

from remindsync.errors import ReminderError, RemoteTimeoutError, classify, log_error

T = TypeVar('T')

#: Callable receiving human-readable progress lines.
StatusCallback = Callable[[str], None]


class RetryPolicy:
    """
    Retries network, timeout and transient authentication failures. Any other failure is raised straight away.

    The delay before attempt ``n + 1`` is ``base * 2^(n-1)`` plus a random jitter of up to 10% of that delay.
    """

    def __init__(self,
                 base_delay: float = 1.0,
                 max_attempts: int = 3,
                 attempt_timeout: float | None = None,
                 sleep: Callable[[float], None] = time.sleep,
                 rand: Callable[[float, float], float] = random.uniform):
        """
        :param base_delay: the delay after the first failed attempt, in seconds.
        :param max_attempts: the maximum number of attempts.
        :param attempt_timeout: seconds after which a single attempt counts as timed out. None disables the timeout.
        :param sleep: callable used to wait between attempts.
        :param rand: callable returning a uniform random number between its two arguments.
        """
        self.base_delay: float = base_delay
        self.max_attempts: int = max(1, max_attempts)
        self.attempt_timeout: float | None = attempt_timeout
        self.sleep = sleep
        self.rand = rand
        self._executor: ThreadPoolExecutor | None = None

    def calculate_delay(self, attempt: int) -> float:
        """
        :param attempt: the number of the attempt which just failed, starting at 1.

        :return: the delay before the next attempt, in seconds.
        """
        delay = self.base_delay * (2 ** (attempt - 1))
        return delay + self.rand(0, 0.1 * delay)

    def _attempt(self, operation: Callable[[], T], name: str) -> T:
        if self.attempt_timeout is None:
            return operation()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='remindsync-retry')
        future = self._executor.submit(operation)
        try:
            return future.result(timeout=self.attempt_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise RemoteTimeoutError('{} did not finish within {} seconds'.format(name, self.attempt_timeout)) from None

    def run(self,
            operation: Callable[[], T],
            name: str = 'Operation',
            on_status: StatusCallback | None = None,
            on_retry: Callable[[ReminderError], None] | None = None) -> T:
        """
        Run an operation, retrying it on retryable failures.

        :param operation: the operation to run.
        :param name: the name of the operation, used in progress messages and logs.
        :param on_status: receives "Starting ...", "Retrying ... (attempt N of M)...", "... completed successfully" and
            "... failed: ..." messages.
        :param on_retry: called with the error before each retry. May raise to abort the remaining attempts.

        :return: the result of the operation.

        :raises ReminderError: the last failure, once it is not retryable or the attempts are exhausted.
        """
        def status(message: str) -> None:
            logging.debug(message)
            if on_status is not None:
                on_status(message)

        status('Starting {}...'.format(name))
        attempt = 1
        while True:
            try:
                result = self._attempt(operation, name)
            except Exception as e:
                err = classify(e)
                if not err.retryable or attempt >= self.max_attempts:
                    status(log_error(err, name))
                    if err is e:
                        raise
                    raise err from e
                delay = self.calculate_delay(attempt)
                logging.warning('{} attempt {} of {} failed ({}), retrying in {:.2f}s'.format(
                    name, attempt, self.max_attempts, err, delay))
                if on_retry is not None:
                    try:
                        on_retry(err)
                    except ReminderError as abort:
                        status(log_error(abort, name))
                        raise
                self.sleep(delay)
                attempt += 1
                status('Retrying {} (attempt {} of {})...'.format(name, attempt, self.max_attempts))
                continue
            status('{} completed successfully'.format(name))
            return result

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
