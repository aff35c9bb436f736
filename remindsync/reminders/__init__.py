"""
This is the main package for the reminder-syncing part of RemindSync. Here, you'll find the following:

- ``model`` - the reminder model, the occurrence calculator, and the local and remote stores.
- ``lifecycle.py`` - Contains the reminder lifecycle state machine.
- ``retry.py`` - Contains the ``RetryPolicy`` class used for every remote call.
- ``sync.py`` - Contains the ``SyncEngine`` class which drains the sync queue against the remote store.
- ``notifications.py`` - Contains the ``NotificationScheduler`` class which keeps one trigger per reminder.
- ``controller.py`` - Contains the ``ReminderController`` class which ties the services together.

"""

from . import model
from . import lifecycle, retry, sync, notifications, controller

__all__ = ['model', 'lifecycle', 'retry', 'sync', 'notifications', 'controller', ]
