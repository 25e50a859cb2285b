"""Centralized Qt signals shared by the sync engine and any attached front-end.

The engine never calls a user interface directly. It emits on :data:`signals` and whatever front-end
is attached (or the test-suite) listens.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for configuration, sync and data events."""
    configSectionChanged = QtCore.Signal(str)

    syncStatusChanged = QtCore.Signal(str, str)  # group_id, SyncStatus value
    conflictDetected = QtCore.Signal(str)  # group_id
    groupDownloaded = QtCore.Signal(str)  # group_id
    groupChanged = QtCore.Signal(str)  # group_id

    queueChanged = QtCore.Signal(str, int)  # group_id, pending count

    showLogs = QtCore.Signal()
    error = QtCore.Signal(str)


signals = Signals()
