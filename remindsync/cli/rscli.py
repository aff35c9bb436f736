import argparse
import datetime
import logging
import os
import pathlib
import sys
import time
from getpass import getpass
from typing import Callable

import keyring
import schedule

from remindsync import helpers, settings
from remindsync.errors import ReminderError
from remindsync.helpers import DateUtil
from remindsync.reminders.controller import ReminderController
from remindsync.reminders.model import frequency as freq
from remindsync.reminders.model.caldavstore import CalDavRemoteStore
from remindsync.reminders.model.localstore import LocalStore
from remindsync.reminders.model.occurrence import OccurrenceCalculator
from remindsync.reminders.model.reminder import Reminder, ReminderStatus
from remindsync.reminders.model.remote import RemoteStore
from remindsync.reminders.notifications import AppState, NotificationScheduler, ScheduleNotificationBackend
from remindsync.reminders.retry import RetryPolicy
from remindsync.reminders.sync import ConflictStrategy, SyncEngine
from remindsync.session import GuestSession


class RemindSyncCli:
    """
    Defines the functionality of the RemindSync CLI.
    """

    def __init__(self, args):
        self.args = args
        self.logger = self.setup_logging()
        self.settings = self.apply_settings()
        if 'caldav_password' in self.args:
            self.prompt_caldav_password()
        self.backend = ScheduleNotificationBackend()
        self.poll_scheduler = schedule.Scheduler()
        self.controller = self.build_controller()

    @staticmethod
    def __process_return(cb: Callable, error: str, code: int):
        """
        Process the return value of one of the controller methods. If there is an error, this is logged and the CLI exits.

        :param cb: The controller function to run.
        :param error: The error message to display on failure.
        :param code: The exit code to use on error.

        :return: the data returned by the controller.
        """
        success, data = cb()
        if not success:
            logging.critical('{} {}'.format(error, data))
            sys.exit(code)
        return data

    def setup_logging(self) -> logging.Logger:
        """
        Sets up the logging system.

        :return: the logging helper for the CLI.
        """
        log_folder = None
        if 'log_dir' in self.args:
            if os.access(self.args.log_dir, os.W_OK | os.X_OK):
                log_folder = self.args.log_dir
            else:
                print("Specified log directory {} is not accessible.".format(self.args.log_dir))
                sys.exit(1)
        return helpers.setup_logging(self.args.log_level, log_folder)

    def apply_settings(self) -> dict:
        """
        Load settings from the configuration file, normally ``conf.json`` in the data location, but may be overridden with
        the --config option. Any configuration options specified via command-line options override the values in the
        configuration file.
        """
        if 'config' in self.args:
            if os.path.exists(self.args.config):
                conf_file = self.args.config
                self.logger.info('Using custom config file: {}'.format(conf_file))
            else:
                self.logger.critical('Configuration file {} not found.'.format(self.args.config))
                sys.exit(2)
        else:
            conf_file = settings.default_conf_file()
            self.logger.info('Using default config file: {}'.format(conf_file))

        vargs = vars(self.args)
        overrides = {key: vargs[key] for key in settings.DEFAULT_SETTINGS if key in vargs}
        try:
            return settings.load_settings(conf_file, overrides)
        except ReminderError as e:
            logging.critical('Your configuration is invalid: {}'.format(e))
            sys.exit(20)

    def prompt_caldav_password(self) -> None:
        new_password = getpass('CalDAV Password> ')
        keyring.set_password(settings.KEYRING_SERVICE, settings.KEYRING_CALDAV_PASSWORD, new_password)

    def build_remote(self) -> RemoteStore | None:
        """
        Create the remote store selected in the settings, or None when reminders are kept locally only. The CLI exits if
        CalDav is selected but not configured.
        """
        if self.settings['remote_backend'] == 'local':
            return None
        if self.settings['caldav_url'] == '':
            logging.critical('CalDAV URL missing. Use --caldav-url to specify or add "caldav_url" to configuration file.')
            sys.exit(4)
        if self.settings['caldav_username'] == '':
            logging.critical(
                'CalDAV username missing. Use --caldav-username to specify or add "caldav_username" in configuration file.')
            sys.exit(4)
        if keyring.get_password(settings.KEYRING_SERVICE, settings.KEYRING_CALDAV_PASSWORD) is None:
            logging.critical('No CalDAV Password in keyring. Use --caldav-password to be prompted for a password.')
            sys.exit(3)
        return CalDavRemoteStore(self.settings['caldav_url'], self.settings['caldav_username'],
                                 self.settings['caldav_calendar'],
                                 timeout=int(self.settings['retry_attempt_timeout']))

    def build_controller(self) -> ReminderController:
        """
        Wire the local store, scheduler and sync engine together.
        """
        store = LocalStore(max_retries=self.settings['queue_max_retries'])
        calculator = OccurrenceCalculator(helpers.local_timezone(self.settings['timezone']))
        scheduler = NotificationScheduler(store, self.backend, calculator, poll_scheduler=self.poll_scheduler,
                                          poll_interval=self.settings['poll_interval'])
        self.backend.deliver = scheduler.deliver
        retry_policy = RetryPolicy(self.settings['retry_base_delay'], self.settings['retry_max_attempts'],
                                   self.settings['retry_attempt_timeout'] or None)
        try:
            strategy = ConflictStrategy(self.settings['conflict_strategy'])
        except ValueError:
            logging.critical('Unknown conflict strategy {}.'.format(self.settings['conflict_strategy']))
            sys.exit(20)
        remote = self.build_remote()
        engine = None
        if remote is not None:
            user_id = self.settings['caldav_username'] or self.settings['user_id']
            engine = SyncEngine(store, remote, GuestSession(user_id), retry_policy, strategy)
        return ReminderController(store, scheduler, engine, calculator, on_alert=RemindSyncCli.alert)

    @staticmethod
    def alert(reminder: Reminder) -> None:
        print('Reminder: {} ({})'.format(reminder.title, reminder.category))

    @staticmethod
    def parse_frequency(args) -> freq.FrequencySpec:
        """
        Build the frequency of a new reminder from the ``add`` options.
        """
        if args.frequency == 'once':
            date = args.date or datetime.date.today().isoformat()
            return freq.from_dict({'type': 'once', 'date': date})
        if args.frequency == 'weekly':
            days = [int(d) for d in (args.days or '').split(',') if d.strip()]
            return freq.from_dict({'type': 'weekly', 'selected_days': days})
        if args.frequency == 'monthly':
            return freq.from_dict({'type': 'monthly', 'day_of_month': args.day_of_month})
        if args.frequency == 'minutely':
            return freq.from_dict({'type': 'minutely', 'minutes': args.minutes})
        if args.frequency == 'custom':
            return freq.from_dict({'type': 'custom', 'interval': args.interval, 'unit': args.unit})
        return freq.from_dict({'type': args.frequency})

    @staticmethod
    def print_reminder(reminder: Reminder) -> None:
        print('{:>4}  {:<10} {:<30} {:<15} {}'.format(
            reminder.id, reminder.status.value, reminder.title, reminder.category, reminder.next_occurrence))

    def add(self) -> None:
        try:
            frequency = RemindSyncCli.parse_frequency(self.args)
            time_of_day = DateUtil.convert(DateUtil.TIME_OF_DAY, self.args.time)
        except (ReminderError, ValueError) as e:
            logging.critical('Invalid reminder: {}'.format(e))
            sys.exit(5)
        reminder = RemindSyncCli.__process_return(
            lambda: self.controller.create_reminder(self.args.title, self.args.category, frequency, time_of_day,
                                                    self.args.description, self.args.repeat_limit),
            "Failed to create reminder.", 5)
        RemindSyncCli.print_reminder(reminder)

    def list_reminders(self) -> None:
        statuses = [ReminderStatus(self.args.status)] if self.args.status else None
        reminders = RemindSyncCli.__process_return(
            lambda: self.controller.get_reminders(statuses),
            "Failed to load reminders.", 6)
        for reminder in reminders:
            RemindSyncCli.print_reminder(reminder)

    def change(self) -> None:
        actions = {
            'pause': lambda: self.controller.pause(self.args.id),
            'resume': lambda: self.controller.resume(self.args.id),
            'snooze': lambda: self.controller.snooze(self.args.id, self.args.minutes),
            'complete': lambda: (self.controller.complete_manually(self.args.id) if self.args.manual
                                 else self.controller.complete(self.args.id)),
            'delete': lambda: self.controller.delete(self.args.id),
        }
        data = RemindSyncCli.__process_return(
            actions[self.args.command],
            "Failed to {} reminder {}.".format(self.args.command, self.args.id), 7)
        if isinstance(data, Reminder):
            RemindSyncCli.print_reminder(data)
        else:
            logging.info(data)

    def sync(self) -> None:
        strategy = ConflictStrategy(self.args.strategy) if self.args.strategy else None
        # Echo sync progress to the console as well as the log file
        echo = helpers.FunctionHandler(print)
        echo.setLevel(logging.INFO)
        logging.getLogger().addHandler(echo)
        try:
            data = RemindSyncCli.__process_return(
                lambda: self.controller.sync_now(strategy, logging.info),
                "Failed to synchronise reminders.", 8)
            logging.info('Pushed {pushed}, failed {failed}, pulled {pulled}'.format(**data))
        finally:
            logging.getLogger().removeHandler(echo)

    def status(self) -> None:
        data = RemindSyncCli.__process_return(self.controller.queue_status, "Failed to read sync queue.", 9)
        for key, value in data.items():
            print('{:<20} {}'.format(key, value))

    def run(self) -> None:
        """
        Keep reminders firing until interrupted: trigger delivery, the periodic overdue check and autosync all run on
        background threads.
        """
        logging.info('Scheduling reminders...')
        RemindSyncCli.__process_return(self.controller.start, "Failed to schedule reminders.", 10)
        self.controller.scheduler.start_periodic_check(self.settings['overdue_check_interval'])
        if self.settings['autosync'] and self.controller.engine is not None:
            self.poll_scheduler.every(self.settings['autosync_interval']).minutes.do(
                self.controller.sync_now).tag('autosync')
            logging.info('Autosync every {} minutes'.format(self.settings['autosync_interval']))
        stop_triggers = helpers.run_continuously(self.backend.scheduler)
        stop_polling = helpers.run_continuously(self.poll_scheduler)
        logging.info('RemindSync is running. Press Ctrl+C to stop.')
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            logging.info('Stopping RemindSync...')
        finally:
            stop_triggers.set()
            stop_polling.set()
            self.controller.scheduler.handle_app_state_change(AppState.DETACHED)

    def execute(self) -> None:
        commands = {
            'add': self.add,
            'list': self.list_reminders,
            'pause': self.change,
            'resume': self.change,
            'snooze': self.change,
            'complete': self.change,
            'delete': self.change,
            'sync': self.sync,
            'status': self.status,
            'run': self.run,
        }
        commands[self.args.command]()


def main():
    """
    Defines arguments accepted by the CLI.
    """

    parser = argparse.ArgumentParser(
        prog="RemindSync CLI",
        description="Schedule reminders locally and keep them in sync with a remote store.",
    )

    # RemindSync options
    parser.add_argument(
        "--remote-backend",
        type=str,
        choices=['local', 'caldav'],
        default=argparse.SUPPRESS,
        help="select the remote store. local keeps reminders on this device only.")
    parser.add_argument(
        "--caldav-url",
        type=str,
        default=argparse.SUPPRESS,
        help="specify the URL of the CalDAV server.")
    parser.add_argument(
        "--caldav-username",
        type=str,
        default=argparse.SUPPRESS,
        help="specify username for CalDAV server.")
    parser.add_argument(
        "--caldav-password",
        default=argparse.SUPPRESS,
        action='store_true',
        help="prompt for CalDAV password.")
    parser.add_argument(
        "--timezone",
        type=str,
        default=argparse.SUPPRESS,
        help="IANA timezone used for reminder times, such as Europe/Malta. Defaults to the local timezone.")

    # Cli-specific options
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        default=argparse.SUPPRESS,
        help="use to provide a path to a custom configuration file.")
    parser.add_argument(
        "--log-dir",
        type=pathlib.Path,
        default=argparse.SUPPRESS,
        help="specify a custom directory to use for logging.")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=['debug', 'info', 'critical', 'warning'],
        default='info',
        help="specify the logging level.")

    commands = parser.add_subparsers(dest='command', required=True)

    add = commands.add_parser('add', help="create a reminder.")
    add.add_argument("title", type=str, help="the title of the reminder.")
    add.add_argument("--category", type=str, default='General', help="the category of the reminder.")
    add.add_argument("--description", type=str, default='', help="an optional description.")
    add.add_argument(
        "--frequency",
        type=str,
        choices=['once', 'daily', 'weekly', 'monthly', 'hourly', 'minutely', 'custom'],
        default='once',
        help="how the reminder repeats.")
    add.add_argument("--time", type=str, default='09:00', help="time of day as HH:MM.")
    add.add_argument("--date", type=str, help="date of a one-off reminder as YYYY-MM-DD.")
    add.add_argument("--days", type=str, help="ISO weekdays of a weekly reminder, such as 1,3,5.")
    add.add_argument("--day-of-month", type=int, default=1, help="day of a monthly reminder.")
    add.add_argument("--minutes", type=int, default=1, help="minutes of a minutely reminder.")
    add.add_argument("--interval", type=int, default=1, help="interval of a custom reminder.")
    add.add_argument("--unit", type=str, choices=['minutes', 'hours', 'days'], default='minutes',
                     help="interval unit of a custom reminder.")
    add.add_argument("--repeat-limit", type=int, default=0, help="completions after which the reminder ends.")

    list_parser = commands.add_parser('list', help="list reminders.")
    list_parser.add_argument("--status", type=str, choices=[s.value for s in ReminderStatus if s != ReminderStatus.DELETED],
                             help="only list reminders with this status.")

    for name, help_text in [('pause', "pause a reminder."), ('resume', "resume a paused reminder."),
                            ('delete', "delete a reminder.")]:
        command = commands.add_parser(name, help=help_text)
        command.add_argument("id", type=int, help="the id of the reminder.")

    snooze_parser = commands.add_parser('snooze', help="snooze a reminder.")
    snooze_parser.add_argument("id", type=int, help="the id of the reminder.")
    snooze_parser.add_argument("--minutes", type=int, default=5, help="snooze length in minutes.")

    complete = commands.add_parser('complete', help="complete a reminder.")
    complete.add_argument("id", type=int, help="the id of the reminder.")
    complete.add_argument("--manual", action='store_true', help="complete the reminder for good.")

    sync = commands.add_parser('sync', help="synchronise with the remote store now.")
    sync.add_argument("--strategy", type=str, choices=[s.value for s in ConflictStrategy],
                      help="conflict resolution strategy for this sync.")

    commands.add_parser('status', help="show the sync queue status.")
    commands.add_parser('run', help="keep reminders firing until interrupted.")

    RemindSyncCli(parser.parse_args()).execute()


if __name__ == "__main__":
    main()
