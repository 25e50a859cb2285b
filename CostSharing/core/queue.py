"""Offline mutation queue.

Every local change is recorded as a :class:`~CostSharing.core.models.PendingChange` so that it survives
restarts and can be uploaded once the remote store is reachable. Changes are coalesced as they are
queued: a later update replaces the payload of the queued one, and a delete supersedes everything queued
for the entity before it.

Processing pushes each affected group's full snapshot, so the queue only has to remember *which* groups
changed, and in which order.
"""
import json
import logging
import threading
from typing import Any, Dict, List, Optional, Union

from PySide6 import QtCore

from .database import DatabaseAPI
from .models import PendingChange, ChangeOperation, EntityType, SyncStatus, new_id, utc_now
from ..status import status


class OfflineQueue(QtCore.QObject):
    """Persistent FIFO of local mutations awaiting upload.

    The orchestrator used by :meth:`process_queue` is attached by
    :class:`~CostSharing.core.sync.SyncOrchestrator` when it is constructed with this queue.
    """

    def __init__(self, database: DatabaseAPI, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self._database = database
        self._lock = threading.RLock()
        self.orchestrator = None

    def _emit_changed(self, group_id: str) -> None:
        from ..actions import signals
        signals.queueChanged.emit(group_id, self.pending_count(group_id))

    def _next_sequence(self) -> int:
        return max((c.sequence for c in self._database.get_all(PendingChange)), default=0) + 1

    def enqueue(self, group_id: str, entity_type: EntityType, entity_id: str,
                operation: ChangeOperation, payload: Union[str, Dict[str, Any], None] = None
                ) -> Optional[PendingChange]:
        """Queue a local change.

        Args:
            group_id: Group the entity belongs to.
            entity_type: Kind of entity that changed.
            entity_id: Identifier of the entity.
            operation: Create, Update or Delete.
            payload: The entity's wire dictionary (or its JSON text).

        Returns:
            Optional[PendingChange]: The queued (or updated) entry, None when a delete cancelled a
            queued create.
        """
        if not group_id or not entity_id:
            raise status.ValidationException('A queued change needs a group and an entity id.')

        entity_type = EntityType(entity_type)
        operation = ChangeOperation(operation)
        if payload is None:
            text = '{}'
        elif isinstance(payload, str):
            text = payload
        else:
            text = json.dumps(payload, default=str)

        with self._lock:
            existing: List[PendingChange] = self._database.get_all(
                PendingChange, order_by='sequence',
                group_id=group_id, entity_type=entity_type, entity_id=entity_id
            )
            live = [c for c in existing if c.operation in (ChangeOperation.Create, ChangeOperation.Update)]

            if operation == ChangeOperation.Update and live:
                target = live[-1].copy(payload=text)
                self._database.save(target)
                logging.debug(f'Coalesced update of {entity_type} "{entity_id}" into queued {target.operation}.')
                self._emit_changed(group_id)
                return target

            if operation == ChangeOperation.Delete and live:
                created_here = any(c.operation == ChangeOperation.Create for c in live)
                for change in live:
                    self._database.delete(PendingChange, change.id)
                if created_here:
                    logging.debug(f'{entity_type} "{entity_id}" was created and deleted offline; dropped.')
                    self._emit_changed(group_id)
                    return None

            change = PendingChange(
                id=new_id(),
                group_id=group_id,
                entity_type=entity_type,
                entity_id=entity_id,
                operation=operation,
                payload=text,
                created_at=utc_now(),
                sequence=self._next_sequence(),
            )
            self._database.save(change)

        logging.debug(f'Queued {operation} of {entity_type} "{entity_id}" in group "{group_id}".')
        self._emit_changed(group_id)
        return change

    def pending_changes(self, group_id: Optional[str] = None) -> List[PendingChange]:
        """Return queued changes in FIFO order, optionally limited to one group."""
        if group_id:
            return self._database.get_all(PendingChange, order_by='sequence', group_id=group_id)
        return self._database.get_all(PendingChange, order_by='sequence')

    def pending_count(self, group_id: str) -> int:
        return len(self._database.get_all(PendingChange, group_id=group_id))

    def remove(self, changes: List[PendingChange]) -> None:
        """Drop specific entries, typically the ones included in an upload."""
        with self._lock:
            for change in changes:
                self._database.delete(PendingChange, change.id)
        for group_id in {c.group_id for c in changes}:
            self._emit_changed(group_id)

    def clear_synced(self, group_id: str) -> int:
        """Drop every queued change of a group after its state reached the remote store.

        Returns:
            int: Number of removed entries.
        """
        with self._lock:
            removed = self._database.delete_where(PendingChange, group_id=group_id)
        if removed:
            logging.debug(f'Cleared {removed} synced change(s) of group "{group_id}".')
        self._emit_changed(group_id)
        return removed

    def process_queue(self, user_id: Optional[str] = None, cancel_event: Optional[threading.Event] = None) -> int:
        """Upload every group with queued changes.

        Groups are processed in the order of their oldest queued change. A group that fails keeps its
        entries with an increased retry count and does not stop the others. A group currently locked
        by another sync, or waiting for conflict resolution, is skipped. A group whose remote snapshot
        changed since its last sync is flagged Conflict instead of being overwritten.

        Args:
            user_id: The user uploading the changes, recorded as the snapshot's author when no email
                is known.
            cancel_event: Stops processing before the next group when set.

        Returns:
            int: Number of queued changes uploaded.
        """
        if self.orchestrator is None:
            raise RuntimeError('OfflineQueue has no orchestrator attached.')

        by_group: Dict[str, List[PendingChange]] = {}
        for change in self.pending_changes():
            by_group.setdefault(change.group_id, []).append(change)

        processed = 0
        for group_id, changes in by_group.items():
            if cancel_event is not None and cancel_event.is_set():
                logging.info('Queue processing cancelled.')
                break

            if self.orchestrator.get_sync_status(group_id) == SyncStatus.Conflict:
                logging.debug(f'Group "{group_id}" is in conflict; its queue waits for the user.')
                continue
            if not self.orchestrator.locks.try_acquire(group_id):
                logging.debug(f'Group "{group_id}" is being synced elsewhere; skipping its queue.')
                continue
            try:
                result = self.orchestrator.upload_pending(group_id, user_id=user_id)
            except status.BaseStatusException as ex:
                logging.warning(f'Failed to upload {len(changes)} change(s) of group "{group_id}": {ex}')
                with self._lock:
                    for change in changes:
                        current = self._database.get(PendingChange, change.id)
                        if current is None:
                            continue
                        self._database.save(
                            current.copy(retry_count=current.retry_count + 1, last_error=str(ex))
                        )
                continue
            finally:
                self.orchestrator.locks.release(group_id)

            if result == SyncStatus.Conflict:
                logging.warning(f'Group "{group_id}" changed remotely; its queue waits for the user.')
                continue
            # the upload removed every entry it included
            processed += len(changes)

        if processed:
            logging.info(f'Uploaded {processed} queued change(s).')
        return processed
