"""
Configuration loading for RemindSync.

Settings are read in three layers: the defaults below, then the JSON configuration file (``conf.json`` in the data
location unless another file is given), then environment variables named ``REMINDSYNC_<KEY>``. The CLI applies its own
options on top. Secrets are never stored in the configuration file; the CalDav password lives in the system keyring.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from decouple import config

from remindsync import helpers
from remindsync.errors import ValidationError

#: Keyring service name, and the keys under which secrets are stored.
KEYRING_SERVICE = 'RemindSync'
KEYRING_CALDAV_PASSWORD = 'CALDAV-PWD'
KEYRING_SESSION_TOKEN = 'SESSION-TOKEN'

DEFAULT_SETTINGS: Dict[str, Any] = {
    'remote_backend': 'local',
    'caldav_url': '',
    'caldav_username': '',
    'caldav_calendar': 'RemindSync',
    'user_id': 'guest',
    'timezone': '',
    'conflict_strategy': 'use_latest',
    'retry_base_delay': 1.0,
    'retry_max_attempts': 3,
    'retry_attempt_timeout': 30.0,
    'queue_max_retries': 5,
    'poll_interval': 30,
    'overdue_check_interval': 30,
    'autosync': False,
    'autosync_interval': 15,
    'log_level': 'info',
}


def default_conf_file() -> Path:
    return helpers.settings_folder() / 'conf.json'


def merge_settings(settings: Dict[str, Any], conf_file: Path | str) -> Dict[str, Any]:
    """
    Override the given settings with any found in a configuration file. Unknown keys are ignored.

    :param settings: the settings to update.
    :param conf_file: path to the JSON configuration file. A missing file leaves the settings unchanged.

    :return: the updated settings.

    :raises ValidationError: if the configuration file is not valid JSON.
    """
    if not os.path.exists(conf_file):
        return settings
    with open(conf_file) as fp:
        try:
            loaded_settings = json.loads(fp.read())
        except json.decoder.JSONDecodeError as e:
            raise ValidationError('Configuration file at {} is invalid: {}'.format(conf_file, e)) from None
    if not isinstance(loaded_settings, dict):
        raise ValidationError('Configuration file at {} must contain a JSON object.'.format(conf_file))
    for key in settings:
        if key in loaded_settings:
            settings[key] = loaded_settings[key]
    return settings


def apply_environment(settings: Dict[str, Any]) -> Dict[str, Any]:
    """
    Override settings from ``REMINDSYNC_<KEY>`` environment variables (or a ``.env`` file), cast to the type of the
    default value.
    """
    for key, value in settings.items():
        cast = type(DEFAULT_SETTINGS[key])
        settings[key] = config('REMINDSYNC_{}'.format(key.upper()), default=value, cast=cast)
    return settings


def load_settings(conf_file: Path | str | None = None, overrides: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """
    Load the RemindSync settings.

    :param conf_file: path to the JSON configuration file. Defaults to ``conf.json`` in the data location.
    :param overrides: values which take precedence over everything else, such as command line options. None values are
        ignored.

    :return: the settings in use.

    :raises ValidationError: if the configuration file is invalid, or a setting has an invalid value.
    """
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    merge_settings(settings, conf_file or default_conf_file())
    try:
        apply_environment(settings)
    except ValueError as e:
        raise ValidationError('Invalid setting in environment: {}'.format(e)) from None
    for key, value in (overrides or {}).items():
        if key in settings and value is not None:
            settings[key] = value
    if settings['remote_backend'] not in ('local', 'caldav'):
        raise ValidationError('Unknown remote backend {}.'.format(settings['remote_backend']))
    logging.debug('Settings in use: {}'.format(json.dumps(settings, indent=2)))
    return settings
