"""Application-wide Qt signals for CarCost.

UI callers connect to these to show progress, errors and account changes;
the core emits them but never depends on a receiver being connected.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for configuration, authentication and sync events."""
    configSectionChanged = QtCore.Signal(str)

    authenticationChanged = QtCore.Signal(bool)  # logged in
    authenticationRequested = QtCore.Signal()

    syncStateChanged = QtCore.Signal(object)  # SyncState
    syncFinished = QtCore.Signal(object)  # SyncResult

    error = QtCore.Signal(str)
    showLogs = QtCore.Signal()


signals = Signals()
