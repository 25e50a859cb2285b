"""Bidirectional sync of local groups with their remote snapshots.

A :class:`SyncScheduler` ticks the :class:`SyncOrchestrator` on a timer. Every tick dispatches one task per
sync-enabled group to a thread pool, so the timer never waits on the network. A task compares the local
:class:`~CostSharing.core.models.SyncMetadata` with the remote file's version stamp and then:

- uploads, when only the local copy changed (or no remote file exists yet),
- downloads and applies the remote snapshot, when only the remote copy changed,
- marks the group as in conflict, when both changed.

At most one sync, upload or conflict resolution runs per group at a time. The :class:`GroupLockArena`
hands out the per-group locks: timer ticks skip groups that are busy, user actions wait for them.
"""
import contextlib
import datetime
import functools
import logging
import sqlite3
import threading
from typing import Callable, Dict, Iterator, List, Optional

from PySide6 import QtCore

from .conflict import merge_group_metadata
from .database import DatabaseAPI
from .models import (
    Group, GroupSnapshot, RemoteMetadata, SyncMetadata, SyncStatus, check_transition, utc_now
)
from .queue import OfflineQueue
from ..actions import signals
from ..settings import lib
from ..status import status

CONFLICT_MESSAGE = 'Conflict detected: both local and remote have changes'


class GroupLockArena:
    """One lock per group, created on demand."""

    def __init__(self) -> None:
        self._master = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, group_id: str) -> threading.Lock:
        with self._master:
            if group_id not in self._locks:
                self._locks[group_id] = threading.Lock()
            return self._locks[group_id]

    def try_acquire(self, group_id: str) -> bool:
        """Acquire a group's lock without waiting. Returns False if it is held elsewhere."""
        return self._lock_for(group_id).acquire(blocking=False)

    def release(self, group_id: str) -> None:
        self._lock_for(group_id).release()

    def is_locked(self, group_id: str) -> bool:
        return self._lock_for(group_id).locked()

    @contextlib.contextmanager
    def hold(self, group_id: str) -> Iterator[None]:
        """Hold a group's lock for the duration of the block, waiting for it if needed."""
        lock = self._lock_for(group_id)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()


class SyncOrchestrator(QtCore.QObject):
    """Decides, per group, whether to upload, download or flag a conflict.

    Args:
        database: The local store.
        store: The remote snapshot store (:class:`~CostSharing.core.service.DriveSnapshotStore`).
        queue: The offline queue. Its entries count as local changes and are cleared after an upload.
        manager: Identity provider used to stamp uploads.
        dispatch: Runs a task in the background. Defaults to a thread pool owned by the orchestrator.
        clock: Returns the current UTC time.
    """

    def __init__(self, database: DatabaseAPI, store, queue: Optional[OfflineQueue] = None, manager=None,
                 dispatch: Optional[Callable[[Callable[[], None]], None]] = None,
                 clock: Optional[Callable[[], datetime.datetime]] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self._database = database
        self._store = store
        self._manager = manager
        self._clock = clock or utc_now
        self._meta_lock = threading.Lock()

        self.queue = queue
        if queue is not None:
            queue.orchestrator = self

        self.locks = GroupLockArena()
        self.cancel_event = threading.Event()

        self._pool: Optional[QtCore.QThreadPool] = None
        if dispatch is None:
            self._pool = QtCore.QThreadPool(self)
            self._pool.setMaxThreadCount(lib.settings.get_section('sync')['max_workers'])
            dispatch = self._pool.start
        self._dispatch = dispatch

    def _author(self, user_id: Optional[str]) -> Optional[str]:
        if self._manager is None:
            return user_id
        return self._manager.current_user_email() or user_id

    def _pending_count(self, group_id: str) -> int:
        return self.queue.pending_count(group_id) if self.queue is not None else 0

    def _cancelled(self, cancel_event: Optional[threading.Event]) -> bool:
        return self.cancel_event.is_set() or (cancel_event is not None and cancel_event.is_set())

    def wait_for_done(self, msecs: int = -1) -> bool:
        """Wait for dispatched tasks to finish. Always True with a custom dispatcher."""
        if self._pool is None:
            return True
        return self._pool.waitForDone(msecs)

    # Metadata

    def get_metadata(self, group_id: str) -> Optional[SyncMetadata]:
        return self._database.get(SyncMetadata, group_id)

    def update_metadata(self, group_id: str, new_status: Optional[SyncStatus] = None, **changes) -> SyncMetadata:
        """Apply changes to a group's sync metadata, checking the status transition.

        The record is re-read under a lock so concurrent updates of other fields are not lost.

        Raises:
            status.GroupNotFoundException: If sync is not enabled for the group.
            status.IllegalTransitionException: If the status change is not allowed.
        """
        with self._meta_lock:
            meta = self.get_metadata(group_id)
            if meta is None:
                raise status.GroupNotFoundException(f'Sync is not enabled for group "{group_id}".')
            if new_status is not None:
                check_transition(meta.status, new_status)
                changes['status'] = new_status
            updated = meta.copy(**changes)
            self._database.save(updated)

        if new_status is not None and new_status != meta.status:
            logging.info(f'Group "{group_id}": {meta.status} -> {new_status}.')
            signals.syncStatusChanged.emit(group_id, new_status.value)
            if new_status == SyncStatus.Conflict:
                signals.conflictDetected.emit(group_id)
        return updated

    def enable_sync(self, group_id: str) -> SyncMetadata:
        """Start syncing a local group. Does nothing if it is already enabled.

        Raises:
            status.GroupNotFoundException: If the group does not exist locally.
        """
        if self._database.get(Group, group_id) is None:
            raise status.GroupNotFoundException(group_id)
        with self._meta_lock:
            meta = self.get_metadata(group_id)
            if meta is None:
                meta = SyncMetadata(group_id=group_id, local_last_modified=self._clock())
                self._database.save(meta)
                logging.info(f'Sync enabled for group "{group_id}".')
        return meta

    def disable_sync(self, group_id: str) -> bool:
        """Stop syncing a group. The remote file is left untouched.

        Returns:
            bool: True if sync was enabled.
        """
        with self.locks.hold(group_id):
            removed = self._database.delete(SyncMetadata, group_id)
        if removed:
            logging.info(f'Sync disabled for group "{group_id}".')
        return removed

    def get_sync_status(self, group_id: str) -> SyncStatus:
        meta = self.get_metadata(group_id)
        return meta.status if meta else SyncStatus.NotSynced

    def last_sync_time(self) -> Optional[datetime.datetime]:
        """Return the most recent successful sync of any group."""
        times = [m.last_sync_time for m in self._database.get_all(SyncMetadata) if m.last_sync_time]
        return max(times, default=None)

    def mark_local_change(self, group_id: str) -> None:
        """Record that a group was modified locally.

        A synced group becomes PendingUpload. Groups in conflict or error keep their status; the newer
        local timestamp is picked up when they are synced again.
        """
        signals.groupChanged.emit(group_id)
        meta = self.get_metadata(group_id)
        if meta is None:
            return

        new_status = None
        if meta.status in (SyncStatus.Synced, SyncStatus.NotSynced):
            new_status = SyncStatus.PendingUpload
        try:
            self.update_metadata(group_id, new_status, local_last_modified=self._clock())
        except status.IllegalTransitionException:
            # a sync moved the group on in the meantime
            self.update_metadata(group_id, local_last_modified=self._clock())

    def _has_local_changes(self, meta: SyncMetadata) -> bool:
        if self._pending_count(meta.group_id) > 0:
            return True
        if meta.last_sync_time is None:
            return True
        return meta.local_last_modified is not None and meta.local_last_modified > meta.last_sync_time

    @staticmethod
    def _has_remote_changes(meta: SyncMetadata, remote: RemoteMetadata) -> bool:
        if remote.version != meta.version:
            return True
        if remote.last_modified and meta.remote_last_modified:
            return remote.last_modified > meta.remote_last_modified
        return False

    def _rederive_status(self, meta: SyncMetadata) -> SyncStatus:
        return SyncStatus.PendingUpload if self._has_local_changes(meta) else SyncStatus.Synced

    def recover(self) -> List[str]:
        """Re-derive the status of groups left in Syncing by an interrupted run.

        Returns:
            List[str]: Ids of the recovered groups.
        """
        recovered: List[str] = []
        for meta in self._database.get_all(SyncMetadata, status=SyncStatus.Syncing):
            new_status = self._rederive_status(meta)
            self.update_metadata(meta.group_id, new_status)
            logging.warning(f'Group "{meta.group_id}" was left syncing; recovered as {new_status}.')
            recovered.append(meta.group_id)
        return recovered

    # Transfers

    def fetch_remote_snapshot(self, file_id: str) -> GroupSnapshot:
        """Download and parse a remote snapshot without applying it."""
        return GroupSnapshot.from_json(self._store.download(file_id))

    def _upload(self, group_id: str, meta: SyncMetadata, user_id: Optional[str] = None) -> SyncMetadata:
        started = self._clock()
        queued = self.queue.pending_changes(group_id) if self.queue is not None else []
        snapshot = self._database.get_snapshot(group_id)

        file_id = meta.remote_file_id
        remote_version = 0
        if file_id:
            try:
                remote_version = self._store.get_metadata(file_id).version
            except status.RemoteNotFoundException:
                logging.warning(f'Remote file of group "{group_id}" is gone; uploading a new one.')
                file_id = None

        snapshot.version = max(meta.version, remote_version) + 1
        snapshot.last_modified = started
        snapshot.last_modified_by = self._author(user_id)

        file_id = self._store.upload(
            group_id, snapshot.to_json(), file_id=file_id,
            version=snapshot.version, last_modified=started
        )
        if queued:
            self.queue.remove(queued)

        logging.info(f'Uploaded group "{group_id}" as version {snapshot.version}.')
        return self.update_metadata(
            group_id, SyncStatus.Synced,
            remote_file_id=file_id,
            version=snapshot.version,
            last_sync_time=started,
            remote_last_modified=started,
            error_message=None,
        )

    def _download(self, group_id: str, meta: SyncMetadata, remote: RemoteMetadata) -> SyncMetadata:
        started = self._clock()
        snapshot = self.fetch_remote_snapshot(meta.remote_file_id)
        if snapshot.group_id != group_id:
            raise status.SnapshotInvalidException(
                f'File "{meta.remote_file_id}" holds group "{snapshot.group_id}", expected "{group_id}".'
            )
        self._database.replace_group(snapshot)
        signals.groupChanged.emit(group_id)

        logging.info(f'Applied remote version {remote.version} of group "{group_id}".')
        return self.update_metadata(
            group_id, SyncStatus.Synced,
            version=max(remote.version, snapshot.version),
            last_sync_time=started,
            local_last_modified=started,
            remote_last_modified=remote.last_modified or snapshot.last_modified,
            error_message=None,
        )

    def push_group(self, group_id: str, user_id: Optional[str] = None,
                   on_error: SyncStatus = SyncStatus.Error) -> SyncMetadata:
        """Upload a group's local snapshot unconditionally.

        The new version is one above both the local and the remote version. The caller must hold the
        group's lock. Sync is enabled for the group if it was not already.

        Args:
            group_id: Group to upload.
            user_id: Uploading user, used as author when no email is known.
            on_error: Status the group is left in when the upload fails.

        Raises:
            status.RemoteStoreException: If the upload fails.
        """
        meta = self.get_metadata(group_id) or self.enable_sync(group_id)
        self.update_metadata(group_id, SyncStatus.Syncing)
        try:
            return self._upload(group_id, meta, user_id=user_id)
        except status.BaseStatusException as ex:
            self.update_metadata(group_id, on_error, error_message=str(ex))
            raise

    def upload_pending(self, group_id: str, user_id: Optional[str] = None) -> SyncStatus:
        """Upload a group's local changes unless the remote snapshot moved on since the last sync.

        When the remote copy changed as well the group is flagged Conflict and nothing is uploaded.
        The caller must hold the group's lock.

        Returns:
            SyncStatus: Synced after an upload, Conflict when both sides changed.

        Raises:
            status.RemoteStoreException: If reading the remote metadata or the upload fails. The group
                is left in Error.
        """
        meta = self.get_metadata(group_id) or self.enable_sync(group_id)
        if meta.remote_file_id:
            self.update_metadata(group_id, SyncStatus.Syncing)
            try:
                remote = self._store.get_metadata(meta.remote_file_id)
            except status.RemoteNotFoundException:
                remote = None
            except status.BaseStatusException as ex:
                self.update_metadata(group_id, SyncStatus.Error, error_message=str(ex))
                raise
            if remote is not None and self._has_remote_changes(meta, remote):
                return self._flag_conflict(group_id, meta).status
        return self.push_group(group_id, user_id=user_id).status

    def pull_group(self, group_id: str, on_error: SyncStatus = SyncStatus.Error) -> SyncMetadata:
        """Download a group's remote snapshot and overwrite the local copy with it.

        The caller must hold the group's lock.

        Raises:
            status.GroupNotFoundException: If sync is not enabled for the group.
            status.RemoteNotFoundException: If the group has no remote file.
            status.RemoteStoreException: If the download fails.
        """
        meta = self.get_metadata(group_id)
        if meta is None:
            raise status.GroupNotFoundException(f'Sync is not enabled for group "{group_id}".')
        if not meta.remote_file_id:
            raise status.RemoteNotFoundException(f'Group "{group_id}" has never been uploaded.')

        self.update_metadata(group_id, SyncStatus.Syncing)
        try:
            remote = self._store.get_metadata(meta.remote_file_id)
            return self._download(group_id, meta, remote)
        except status.BaseStatusException as ex:
            self.update_metadata(group_id, on_error, error_message=str(ex))
            raise

    def _flag_conflict(self, group_id: str, meta: SyncMetadata) -> SyncMetadata:
        # group name and currency are merged right away, content waits for the user
        try:
            remote_snapshot = self.fetch_remote_snapshot(meta.remote_file_id)
            local_group = self._database.get(Group, group_id)
            if local_group is not None and remote_snapshot.group_id == group_id:
                merged = merge_group_metadata(local_group, remote_snapshot.group)
                if merged is not local_group:
                    self._database.save(merged)
                    signals.groupChanged.emit(group_id)
        except status.RemoteStoreException as ex:
            logging.warning(f'Could not merge metadata of conflicted group "{group_id}": {ex}')

        logging.warning(f'Group "{group_id}": {CONFLICT_MESSAGE}.')
        return self.update_metadata(group_id, SyncStatus.Conflict, error_message=CONFLICT_MESSAGE)

    def sync_group(self, group_id: str, cancel_event: Optional[threading.Event] = None,
                   blocking: bool = True) -> SyncStatus:
        """Bring one group in line with its remote snapshot.

        Failures are recorded in the group's metadata (status Error) and never raised. A group in
        conflict is left untouched until it is resolved.

        Args:
            group_id: The group to sync.
            cancel_event: Aborts the sync between steps when set.
            blocking: Wait for the group's lock. When False a busy group is skipped.

        Returns:
            SyncStatus: The group's status afterwards.
        """
        if self.get_metadata(group_id) is None:
            logging.debug(f'Sync is not enabled for group "{group_id}".')
            return SyncStatus.NotSynced

        if blocking:
            with self.locks.hold(group_id):
                return self._sync_locked(group_id, cancel_event)

        if not self.locks.try_acquire(group_id):
            logging.debug(f'Group "{group_id}" is busy; skipping.')
            return self.get_sync_status(group_id)
        try:
            return self._sync_locked(group_id, cancel_event)
        finally:
            self.locks.release(group_id)

    def _restore_after_cancel(self, group_id: str) -> SyncStatus:
        meta = self.get_metadata(group_id)
        new_status = self._rederive_status(meta)
        logging.info(f'Sync of group "{group_id}" cancelled.')
        return self.update_metadata(group_id, new_status).status

    def _sync_locked(self, group_id: str, cancel_event: Optional[threading.Event]) -> SyncStatus:
        current = self.get_sync_status(group_id)
        if current == SyncStatus.Conflict:
            logging.debug(f'Group "{group_id}" is in conflict; waiting for the user.')
            return current

        try:
            meta = self.update_metadata(group_id, SyncStatus.Syncing)
            if self._cancelled(cancel_event):
                return self._restore_after_cancel(group_id)

            if not meta.remote_file_id:
                logging.info(f'Group "{group_id}" has no remote file yet; uploading.')
                return self._upload(group_id, meta).status

            try:
                remote = self._store.get_metadata(meta.remote_file_id)
            except status.RemoteNotFoundException:
                logging.warning(f'Remote file of group "{group_id}" is missing; uploading again.')
                meta = self.update_metadata(group_id, remote_file_id=None)
                return self._upload(group_id, meta).status

            if self._cancelled(cancel_event):
                return self._restore_after_cancel(group_id)

            local_changed = self._has_local_changes(meta)
            remote_changed = self._has_remote_changes(meta, remote)
            logging.debug(
                f'Group "{group_id}": local changed={local_changed}, remote changed={remote_changed} '
                f'(local v{meta.version}, remote v{remote.version}).'
            )

            if local_changed and remote_changed:
                return self._flag_conflict(group_id, meta).status

            if local_changed:
                self.update_metadata(group_id, SyncStatus.PendingUpload)
                meta = self.update_metadata(group_id, SyncStatus.Syncing)
                return self._upload(group_id, meta).status

            if remote_changed:
                self.update_metadata(group_id, SyncStatus.PendingDownload)
                meta = self.update_metadata(group_id, SyncStatus.Syncing)
                return self._download(group_id, meta, remote).status

            return self.update_metadata(group_id, SyncStatus.Synced, error_message=None).status

        except (status.BaseStatusException, sqlite3.Error) as ex:
            logging.error(f'Sync of group "{group_id}" failed: {ex}')
            meta = self.get_metadata(group_id)
            if meta is None:
                return SyncStatus.NotSynced
            if meta.status != SyncStatus.Syncing:
                self.update_metadata(group_id, SyncStatus.Syncing)
            return self.update_metadata(group_id, SyncStatus.Error, error_message=str(ex)).status

    def download_remote_groups(self, user_id: Optional[str] = None,
                               cancel_event: Optional[threading.Event] = None) -> List[str]:
        """Fetch groups shared with the user that do not exist locally yet.

        Returns:
            List[str]: Ids of the downloaded groups.
        """
        downloaded: List[str] = []
        for file_id, group_id in self._store.list_accessible(user_id):
            if self._cancelled(cancel_event):
                break
            if self._database.get(Group, group_id) is not None:
                continue
            if not self.locks.try_acquire(group_id):
                continue
            try:
                started = self._clock()
                snapshot = self.fetch_remote_snapshot(file_id)
                if snapshot.group_id != group_id:
                    logging.warning(f'File "{file_id}" holds group "{snapshot.group_id}", expected "{group_id}".')
                    continue
                remote = self._store.get_metadata(file_id)
                self._database.replace_group(snapshot)
                with self._meta_lock:
                    self._database.save(SyncMetadata(
                        group_id=group_id,
                        remote_file_id=file_id,
                        last_sync_time=started,
                        local_last_modified=started,
                        remote_last_modified=remote.last_modified or snapshot.last_modified,
                        status=SyncStatus.Synced,
                        version=max(remote.version, snapshot.version),
                    ))
                downloaded.append(group_id)
                logging.info(f'Downloaded group "{snapshot.group.name}" ({group_id}).')
                signals.groupDownloaded.emit(group_id)
            except status.BaseStatusException as ex:
                logging.warning(f'Could not download group "{group_id}": {ex}')
            finally:
                self.locks.release(group_id)
        return downloaded

    # Scheduling

    def _run_sync_task(self, group_id: str) -> None:
        try:
            self.sync_group(group_id, blocking=False)
        except Exception as ex:
            logging.exception(f'Unexpected error syncing group "{group_id}": {ex}')

    def _run_discovery_task(self) -> None:
        try:
            user_id = self._manager.current_user_id() if self._manager is not None else None
            self.download_remote_groups(user_id)
        except Exception as ex:
            logging.exception(f'Unexpected error looking for remote groups: {ex}')

    def tick(self) -> int:
        """Dispatch a sync of every enabled group, then a look-out for new remote groups.

        Groups in conflict wait for the user and groups that are busy are skipped.

        Returns:
            int: Number of group syncs dispatched.
        """
        if self.cancel_event.is_set():
            return 0

        dispatched = 0
        for meta in self._database.get_all(SyncMetadata):
            if meta.status == SyncStatus.Conflict:
                logging.debug(f'Group "{meta.group_id}" is in conflict; waiting for the user.')
                continue
            if self.locks.is_locked(meta.group_id):
                logging.debug(f'Group "{meta.group_id}" is busy; skipping this tick.')
                continue
            self._dispatch(functools.partial(self._run_sync_task, meta.group_id))
            dispatched += 1

        self._dispatch(self._run_discovery_task)
        return dispatched


class SyncScheduler(QtCore.QObject):
    """Ticks a :class:`SyncOrchestrator` on a timer.

    The interval and the on/off switch come from the ``sync`` settings section and are re-read when
    the section changes.
    """

    def __init__(self, orchestrator: SyncOrchestrator, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.orchestrator = orchestrator
        self._recovered = False

        self._timer = QtCore.QTimer(self)
        self._apply_interval()

        self._connect_signals()

    def _connect_signals(self) -> None:
        self._timer.timeout.connect(self.on_timeout)
        signals.configSectionChanged.connect(self.on_config_changed)

    def _apply_interval(self) -> None:
        config = lib.settings.get_section('sync')
        self._timer.setInterval(int(config['interval_seconds']) * 1000)

    @property
    def is_active(self) -> bool:
        return self._timer.isActive()

    @property
    def interval(self) -> int:
        """Tick interval in seconds."""
        return self._timer.interval() // 1000

    def start(self) -> bool:
        """Start ticking. Groups interrupted by a previous run are recovered first.

        Returns:
            bool: False if sync is switched off in the settings.
        """
        if not lib.settings.get_section('sync')['enabled']:
            logging.info('Sync is disabled in the settings.')
            return False
        if not self._recovered:
            self.orchestrator.recover()
            self._recovered = True

        self.orchestrator.cancel_event.clear()
        self._apply_interval()
        self._timer.start()
        logging.info(f'Sync scheduler started, every {self.interval}s.')
        QtCore.QTimer.singleShot(0, self.on_timeout)
        return True

    def stop(self) -> None:
        """Stop ticking and cancel syncs in flight."""
        self._timer.stop()
        self.orchestrator.cancel_event.set()
        logging.info('Sync scheduler stopped.')

    @QtCore.Slot()
    def on_timeout(self) -> None:
        if not self._timer.isActive():
            return
        self.orchestrator.tick()

    @QtCore.Slot(str)
    def on_config_changed(self, section: str) -> None:
        if section != 'sync':
            return
        config = lib.settings.get_section('sync')
        if not config['enabled'] and self.is_active:
            self.stop()
            return
        self._apply_interval()
