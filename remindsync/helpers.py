"""
This is a helper file used throughout RemindSync.
"""

from __future__ import annotations

import datetime
import logging
import sys
import threading
import time
from pathlib import Path
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import schedule
from dateutil import tz
from decouple import config

DATA_LOCATION: Path = Path(config('REMINDSYNC_DATA_DIR', default=str(Path.home() / ".remindsync")))  #: Location where
# application data is stored.


def db_folder() -> Path:
    """
    Get the location of the SQLite database file.

    :return: path to the SQLite database file.
    """
    DATA_LOCATION.mkdir(parents=True, exist_ok=True)
    return DATA_LOCATION / "RemindSync.db"


def settings_folder() -> Path:
    """
    Get the location of the Application Data folder for RemindSync

    :return: path to the Application Data folder.
    """
    folder = DATA_LOCATION
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def log_folder() -> Path:
    """
    Get the location of the ``logs`` folder within RemindSync's Application Data folder.

    :return: path to the ``logs`` folder.
    """
    folder = DATA_LOCATION / 'logs'
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def now() -> datetime.datetime:
    """
    The current instant as a timezone-aware UTC datetime, floored to the second.

    :return: the current instant.
    """
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def local_timezone(name: str | None = None) -> datetime.tzinfo:
    """
    Get the timezone used for wall-clock arithmetic.

    :param name: an IANA timezone name such as ``Europe/Malta``. If empty, the system's local timezone is used.

    :return: a :py:class:`tzinfo` which applies the zone's daylight-saving rules.
    """
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logging.warning('Unknown timezone {}, falling back to the local timezone.'.format(name))
    return tz.tzlocal()


class DateUtil:
    """
    Utility class for converting between several date and date/time formats.
    """

    ISO_DATETIME = "iso"
    ISO_DATE = "%Y-%m-%d"
    TIME_OF_DAY = "%H:%M"
    CALDAV_DATETIME = "%Y%m%dT%H%M%SZ"
    LOG_FILE = "RemindSync_%Y%m%d-%H%M%S"

    @staticmethod
    def convert(source_format: str,
                obj: str | datetime.datetime | datetime.date | datetime.time | None,
                required_format: str = '') -> str | datetime.datetime | datetime.date | datetime.time | None:
        """
        Convert one date/datetime format to another.

        Datetimes are always exchanged in UTC: a naive datetime parsed from an ISO string is assumed to be UTC, and an
        aware datetime is converted to UTC before being formatted.

        :param source_format: the format of the source date/datetime. Can be left empty if ``obj`` is not a string.
        :param obj: what to convert from. Either a string or a date/time object.
        :param required_format: the format required if the required output is of type :py:class:`str`.

        :return: the converted value, or None if ``obj`` is None.

        :raises ValueError: if ``obj`` does not match ``source_format``.
        """
        if obj is None:
            return None
        if isinstance(obj, str):
            if source_format == DateUtil.ISO_DATETIME:
                obj = datetime.datetime.fromisoformat(obj)
                if obj.tzinfo is None:
                    obj = obj.replace(tzinfo=datetime.timezone.utc)
            elif source_format == DateUtil.TIME_OF_DAY:
                obj = datetime.datetime.strptime(obj, source_format).time()
            elif source_format == DateUtil.ISO_DATE:
                obj = datetime.datetime.strptime(obj, source_format).date()
            else:
                obj = datetime.datetime.strptime(obj, source_format)
        if required_format == '':
            return obj
        if isinstance(obj, datetime.datetime) and obj.tzinfo is not None:
            obj = obj.astimezone(datetime.timezone.utc)
        if required_format == DateUtil.ISO_DATETIME:
            return obj.isoformat()
        return obj.strftime(required_format)


def setup_logging(log_level: str = 'info', log_dir: Path | None = None, log_stdout: bool = False) -> logging.Logger:
    """
    Sets up the logging system.

    :param log_level: the logging level which can be `debug`, `info`, `warning` or `critical`.
    :param log_dir: the folder where the log file is written. Defaults to the ``logs`` folder in the data location.
    :param log_stdout: if True, logs are also sent to standard out.

    :return: the root logger.
    """
    log_levels = {
        'debug': logging.DEBUG,
        'info': logging.INFO,
        'warning': logging.WARNING,
        'critical': logging.CRITICAL
    }
    folder = Path(log_dir) if log_dir else log_folder()
    folder.mkdir(parents=True, exist_ok=True)
    log_file = datetime.datetime.now().strftime(DateUtil.LOG_FILE) + '.log'

    log_format = '%(asctime)s %(levelname)s: %(message)s'
    logging.basicConfig(
        level=log_levels.get(log_level, logging.INFO),
        format=log_format,
    )
    logging.getLogger().setLevel(log_levels.get(log_level, logging.INFO))
    handlers = [logging.FileHandler(folder / log_file)]
    if log_stdout:
        handlers.append(logging.StreamHandler(sys.stdout))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(log_format))
        logging.getLogger().addHandler(handler)
    return logging.getLogger()


def run_continuously(scheduler: schedule.Scheduler, interval: float = 1) -> threading.Event:
    """
    Utility function which continuously calls ``schedule`` to run any pending tasks in a background thread.

    :param scheduler: the scheduler whose pending jobs are run.
    :param interval: interval between cycles, in seconds.

    :return: a threading event which can be used to stop the continuous run.
    """

    #: When set, the thread will be stopped
    cease_continuous_run = threading.Event()

    class ScheduleThread(threading.Thread):
        """
        Class to run continuous tasks
        """

        def run(self):
            """
            Keep tasks running until cancelled
            """
            while not cease_continuous_run.is_set():
                scheduler.run_pending()
                time.sleep(interval)

    continuous_thread = ScheduleThread(daemon=True)
    continuous_thread.start()
    return cease_continuous_run


class FunctionHandler(logging.Handler):
    """
    Logging handler which forwards each formatted record to a function.
    """

    def __init__(self, func: Callable[[str], None]):
        logging.Handler.__init__(self)
        self.func = func

    def emit(self, record):
        msg = self.format(record)
        self.func(msg)
