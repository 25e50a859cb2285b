"""
Core package for CostSharing: the ledger and the sync engine.

This package includes:

- :mod:`CostSharing.core.models` – Records, sync states and the group snapshot format.
- :mod:`CostSharing.core.split` – Even and percentage-based expense splits.
- :mod:`CostSharing.core.ledger` – Pairwise debts from expenses and settlements.
- :mod:`CostSharing.core.simplify` – Minimal settlement plans from net balances.
- :mod:`CostSharing.core.database` – Local SQLite store.
- :mod:`CostSharing.core.queue` – Offline queue of local changes.
- :mod:`CostSharing.core.groups` – Group, expense and settlement mutations.
- :mod:`CostSharing.core.auth` – Google OAuth2 authentication and credential management.
- :mod:`CostSharing.core.service` – Google Drive snapshot store.
- :mod:`CostSharing.core.sync` – Sync orchestrator and its timer-driven scheduler.
- :mod:`CostSharing.core.conflict` – Conflict detection and resolution.
"""
