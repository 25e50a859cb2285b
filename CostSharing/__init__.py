"""
CostSharing: shared expense ledger with offline-first Google Drive sync.

This package provides:

- :mod:`CostSharing.core` – Splits, debts, simplification, the local store, the offline queue and the sync engine.
- :mod:`CostSharing.data` – pandas views of balances and history (:func:`CostSharing.data.data.get_member_summary`).
- :mod:`CostSharing.settings` – Settings management and schema validation.
- :mod:`CostSharing.log` – Logging setup and the in-memory log tank.

Use :func:`CostSharing.exec_` to run the sync engine headless.
"""

import sys

from PySide6 import QtCore

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('CostSharing requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'Gergely Wootsch'
__license__ = 'GPL-3.0'
__copyright__ = 'Copyright (C) 2025 Gergely Wootsch'
__description__ = 'CostSharing: shared expense ledger with offline-first Google Drive sync.'
__url__ = 'https://github.com/wgergely/CostSharing'
__email__ = 'hello+CostSharing@gergely-wootsch.com'

from .log import log

log.setup_logging()


def exec_() -> None:
    """Run the sync engine and enter the Qt event loop.

    Creates the local store, the offline queue and the orchestrator, then starts the scheduler.
    """
    from .core.auth import auth_manager
    from .core.database import DatabaseAPI
    from .core.queue import OfflineQueue
    from .core.service import DriveSnapshotStore
    from .core.sync import SyncOrchestrator, SyncScheduler

    app = QtCore.QCoreApplication(sys.argv)

    database = DatabaseAPI(parent=app)
    queue = OfflineQueue(database, parent=app)
    orchestrator = SyncOrchestrator(database, DriveSnapshotStore(auth_manager), queue=queue,
                                    manager=auth_manager, parent=app)
    scheduler = SyncScheduler(orchestrator, parent=app)
    scheduler.start()

    app.aboutToQuit.connect(scheduler.stop)
    app.aboutToQuit.connect(lambda: orchestrator.wait_for_done(30000))

    sys.exit(app.exec())


if __name__ == '__main__':
    exec_()
