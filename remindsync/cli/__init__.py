"""
The RemindSync command line interface.

- ``rscli.py`` - Contains the ``RemindSyncCli`` class and the ``main`` entry point.

"""
