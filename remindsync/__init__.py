"""
This is the main package for RemindSync.

- ``reminders`` - reminder scheduling, notification triggers and synchronisation.
- ``cli`` - the RemindSync command line interface.
- ``helpers`` - helpers used throughout RemindSync.
- ``errors`` - the error taxonomy shared by every component.
- ``settings`` - configuration loading.
- ``session`` - session/auth providers consumed by the sync engine.

"""

from . import helpers, errors, settings, session

__all__ = ['helpers', 'errors', 'settings', 'session', ]
