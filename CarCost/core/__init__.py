"""
Core package for CarCost.

This package includes:

- :mod:`CarCost.core.models` – Entity dataclasses, enums and value casting.
- :mod:`CarCost.core.database` – Local SQLite store and reactive live queries.
- :mod:`CarCost.core.remote` – Google Sheets remote store returning success/failure results.
- :mod:`CarCost.core.auth` – Google OAuth2 authentication and the user session.
- :mod:`CarCost.core.sync` – Entity reconciler, sync orchestrator and sync worker thread.
- :mod:`CarCost.core.signals` – Application-wide Qt signals.
"""
