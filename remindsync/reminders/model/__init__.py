"""
This is the model of the reminder-syncing part of RemindSync. Here, you'll find the following:

- ``frequency.py`` - Contains the ``FrequencySpec`` variants describing how a reminder repeats.
- ``occurrence.py`` - Contains the occurrence calculator and the schedule validator.
- ``reminder.py`` - Contains the ``Reminder`` class which represents a reminder.
- ``syncqueue.py`` - Contains the ``SyncQueueEntry`` class which represents a pending remote intent.
- ``localstore.py`` - Contains the ``LocalStore`` class, the durable local store with its attached sync queue.
- ``remote.py`` - Contains the ``RemoteStore`` interface and the in-memory remote store.
- ``caldavstore.py`` - Contains the ``CalDavRemoteStore`` class, which keeps reminders as *VTODO* tasks on a CalDav
calendar.

"""

from . import frequency, occurrence, reminder, syncqueue, localstore, remote, caldavstore

__all__ = ['frequency', 'occurrence', 'reminder', 'syncqueue', 'localstore', 'remote', 'caldavstore', ]
