"""Conflict detection and resolution.

A group is in conflict when both the local copy and the remote snapshot changed since the last sync.
Group metadata (name, currency) is merged automatically, last write wins. Content is never merged
silently: the user decides whether to keep the local or the remote copy.
"""
import logging
from typing import Dict, List, Optional

from .database import DatabaseAPI
from .models import Expense, Group, GroupSnapshot, SyncStatus, Record
from ..status import status


def merge_group_metadata(local: Group, remote: Group) -> Group:
    """Return whichever group record was written last. Ties go to ``remote``."""
    if local.updated_at > remote.updated_at:
        return local
    return remote


def merge_expenses(local: List[Expense], remote: List[Expense]) -> List[Expense]:
    """Union two expense lists by id.

    Identical copies of an expense collapse into one. When the two sides hold different content under
    the same id, both versions are kept so nothing is lost; deciding between them is left to the user.

    This is a helper for callers building a merged view of a conflict. Syncing never applies it: a
    conflicted group keeps its local content until :meth:`ConflictResolver.resolve_conflict` picks a side.

    Returns:
        List[Expense]: Local expenses first, then remote-only ones, in their original order.
    """
    merged: List[Expense] = list(local)
    seen: Dict[str, List[Expense]] = {}
    for expense in local:
        seen.setdefault(expense.id, []).append(expense)

    for expense in remote:
        if any(existing == expense for existing in seen.get(expense.id, [])):
            continue
        if expense.id in seen:
            logging.warning(f'Expense "{expense.id}" differs between local and remote copy; keeping both.')
        seen.setdefault(expense.id, []).append(expense)
        merged.append(expense)
    return merged


def _describe(record: Record) -> str:
    for attr in ('description', 'email', 'user_id'):
        value = getattr(record, attr, None)
        if value:
            return f'"{value}"'
    return f'"{record.identity}"'


def _diff_records(kind: str, local: List[Record], remote: List[Record]) -> List[str]:
    messages: List[str] = []
    local_by_id = {r.identity: r for r in local}
    remote_by_id = {r.identity: r for r in remote}

    for key, record in local_by_id.items():
        if key not in remote_by_id:
            messages.append(f'{kind} {_describe(record)} exists only locally.')
        elif remote_by_id[key] != record:
            messages.append(f'{kind} {_describe(record)} differs between local and remote.')
    for key, record in remote_by_id.items():
        if key not in local_by_id:
            messages.append(f'{kind} {_describe(record)} exists only remotely.')
    return messages


def diff_snapshots(local: GroupSnapshot, remote: GroupSnapshot) -> List[str]:
    """Describe how two snapshots of the same group differ."""
    messages: List[str] = []
    if local.group.name != remote.group.name:
        messages.append(f'Group name differs: local "{local.group.name}", remote "{remote.group.name}".')
    messages.extend(_diff_records('Member', local.members, remote.members))
    messages.extend(_diff_records('Expense', local.expenses, remote.expenses))
    messages.extend(_diff_records('Settlement', local.settlements, remote.settlements))
    return messages


class ConflictResolver:
    """Resolves groups left in :attr:`~CostSharing.core.models.SyncStatus.Conflict` by a sync.

    Args:
        database: The local store.
        orchestrator: The :class:`~CostSharing.core.sync.SyncOrchestrator` owning the group locks.
    """

    def __init__(self, database: DatabaseAPI, orchestrator) -> None:
        self._database = database
        self._orchestrator = orchestrator

    def resolve_conflict(self, group_id: str, keep_local: bool) -> bool:
        """Settle a conflict by keeping one side.

        Keeping the local copy uploads it as a new version; keeping the remote copy overwrites the
        local content. Either way the group ends up Synced with an empty upload queue.

        Args:
            group_id: The conflicted group.
            keep_local: True to keep the local copy, False to keep the remote one.

        Returns:
            bool: True if the conflict was resolved, False if the group was not in conflict.

        Raises:
            status.GroupNotFoundException: If sync is not enabled for the group.
            status.RemoteStoreException: If the upload or download fails; the group stays in conflict.
        """
        meta = self._orchestrator.get_metadata(group_id)
        if meta is None:
            raise status.GroupNotFoundException(group_id)
        if meta.status != SyncStatus.Conflict:
            logging.info(f'Group "{group_id}" is {meta.status}, nothing to resolve.')
            return False

        with self._orchestrator.locks.hold(group_id):
            # another thread may have resolved it while we waited
            meta = self._orchestrator.get_metadata(group_id)
            if meta is None or meta.status != SyncStatus.Conflict:
                return False

            if keep_local:
                logging.info(f'Resolving conflict of group "{group_id}" by keeping the local copy.')
                self._orchestrator.push_group(group_id, on_error=SyncStatus.Conflict)
            else:
                logging.info(f'Resolving conflict of group "{group_id}" by keeping the remote copy.')
                self._orchestrator.pull_group(group_id, on_error=SyncStatus.Conflict)

            if self._orchestrator.queue is not None:
                self._orchestrator.queue.clear_synced(group_id)
        return True

    def detect_conflicts(self, group_id: str, remote: Optional[GroupSnapshot] = None) -> List[str]:
        """Describe the divergences of a group, without changing anything.

        Args:
            group_id: The group to inspect.
            remote: The remote snapshot to compare against. Downloaded when omitted and the group is
                in conflict.

        Returns:
            List[str]: Human-readable descriptions, empty when nothing diverges.
        """
        messages: List[str] = []
        meta = self._orchestrator.get_metadata(group_id)
        if meta is not None and meta.status == SyncStatus.Conflict:
            messages.append(meta.error_message or 'Both local and remote copies changed since the last sync.')
            if meta.local_last_modified and meta.last_sync_time:
                messages.append(
                    f'Local copy modified at {meta.local_last_modified.isoformat()}, '
                    f'last synced at {meta.last_sync_time.isoformat()}.'
                )

        if remote is None and meta is not None and meta.status == SyncStatus.Conflict and meta.remote_file_id:
            try:
                remote = self._orchestrator.fetch_remote_snapshot(meta.remote_file_id)
            except status.RemoteStoreException as ex:
                messages.append(f'Remote copy could not be read: {ex.status_message}')

        if remote is not None:
            if remote.last_modified and meta is not None and meta.remote_last_modified:
                if remote.last_modified > meta.remote_last_modified:
                    messages.append(
                        f'Remote copy modified at {remote.last_modified.isoformat()}'
                        f'{" by " + remote.last_modified_by if remote.last_modified_by else ""}.'
                    )
            try:
                local = self._database.get_snapshot(group_id)
            except status.GroupNotFoundException:
                messages.append('The group does not exist locally.')
            else:
                messages.extend(diff_snapshots(local, remote))

        return messages
