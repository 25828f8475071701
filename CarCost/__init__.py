"""
CarCost: vehicle expense tracking with two-way sync between a local database and Google Sheets.

This package provides:

- :mod:`CarCost.core` – Entity models, the local SQLite store, the Google Sheets remote store,
  authentication and the reconciliation engine keeping the two stores consistent.
- :mod:`CarCost.settings` – Settings management, schema validation and application paths.
- :mod:`CarCost.status` – Status codes and the status exception hierarchy.
- :mod:`CarCost.log` – Logging setup with an in-memory log tank.

Typical use::

    from CarCost.core import auth, database, remote, sync

    api = sync.SyncAPI(database.LocalStore(), remote.RemoteStore(), auth.auth_manager)
    result = api.full_sync()
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('CarCost requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'CarCost contributors'
__license__ = 'GPL-3.0'
__description__ = 'CarCost: vehicle expense tracking with two-way sync to Google Sheets.'

from .log import log

log.setup_logging()
