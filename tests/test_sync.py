"""Tests for CostSharing.core.sync.

The orchestrator is wired to an in-memory snapshot store. A second device is simulated by rewriting the
stored snapshot directly, the way another client uploading its own copy would.
"""
import datetime
import threading
from typing import Callable
from unittest import mock

from CostSharing.actions import signals
from CostSharing.core.conflict import ConflictResolver
from CostSharing.core.groups import GroupService
from CostSharing.core.models import (
    ChangeOperation, EntityType, Group, GroupMember, GroupSnapshot, SyncStatus
)
from CostSharing.core.sync import CONFLICT_MESSAGE, GroupLockArena, SyncScheduler
from CostSharing.settings import lib
from CostSharing.status import status
from tests.base import BaseEngineTestCase, EPOCH, capture_signal


class SyncTestCase(BaseEngineTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.groups = GroupService(self.database, self.queue, self.orchestrator, store=self.store, manager=self.auth)
        self.resolver = ConflictResolver(self.database, self.orchestrator)

    def new_group(self, name: str = 'Trip') -> Group:
        group = self.groups.create_group(name)
        self.groups.add_member(group.id, 'bob', email='bob@example.com')
        return group

    def synced_group(self, name: str = 'Trip') -> Group:
        group = self.new_group(name)
        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Synced)
        return group

    def remote_edit(self, group_id: str, mutate: Callable[[GroupSnapshot], None]) -> int:
        """Rewrite the remote snapshot as another device would. Returns the new remote version."""
        file_id = self.orchestrator.get_metadata(group_id).remote_file_id
        item = self.store.files[file_id]
        snapshot = GroupSnapshot.from_json(item['data'])
        mutate(snapshot)
        snapshot.version = item['version'] + 1
        snapshot.last_modified = self.clock()
        snapshot.last_modified_by = 'bob@example.com'
        self.store.upload(group_id, snapshot.to_json(), file_id=file_id,
                          version=snapshot.version, last_modified=snapshot.last_modified)
        return snapshot.version


class SyncOrchestratorTest(SyncTestCase):

    def test_new_group_is_uploaded(self):
        group = self.new_group()
        self.assertEqual(self.orchestrator.get_sync_status(group.id), SyncStatus.PendingUpload)

        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Synced)

        meta = self.orchestrator.get_metadata(group.id)
        self.assertEqual(meta.version, 1)
        self.assertIsNotNone(meta.remote_file_id)
        self.assertIsNotNone(meta.last_sync_time)
        self.assertIsNone(meta.error_message)
        self.assertEqual(self.queue.pending_count(group.id), 0)

        remote = GroupSnapshot.from_json(self.store.files[meta.remote_file_id]['data'])
        self.assertEqual(remote.group.name, 'Trip')
        self.assertEqual({m.user_id for m in remote.members}, {'alice', 'bob'})
        self.assertEqual(remote.version, 1)
        self.assertEqual(remote.last_modified_by, 'alice@example.com')

    def test_unchanged_group_is_not_uploaded_again(self):
        group = self.synced_group()
        self.store.calls.clear()
        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Synced)
        self.assertEqual(self.store.calls, ['get_metadata'])
        self.assertEqual(self.orchestrator.get_metadata(group.id).version, 1)

    def test_local_change_is_uploaded(self):
        group = self.synced_group()
        self.groups.add_expense(group.id, 'Dinner', 100, 'alice', participants=['alice', 'bob'])
        self.assertEqual(self.orchestrator.get_sync_status(group.id), SyncStatus.PendingUpload)

        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Synced)
        meta = self.orchestrator.get_metadata(group.id)
        self.assertEqual(meta.version, 2)
        remote = GroupSnapshot.from_json(self.store.files[meta.remote_file_id]['data'])
        self.assertEqual([e.description for e in remote.expenses], ['Dinner'])
        self.assertEqual(len(remote.expense_splits), 2)

    def test_remote_change_is_downloaded(self):
        group = self.synced_group()
        with capture_signal(signals.groupChanged) as received:
            version = self.remote_edit(group.id, lambda s: s.members.append(
                GroupMember(id='m-carol', group_id=group.id, user_id='carol')
            ))
            self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Synced)

        self.assertIn(group.id, received)
        self.assertEqual(self.orchestrator.get_metadata(group.id).version, version)
        members = {m.user_id for m in self.database.get_all(GroupMember, group_id=group.id)}
        self.assertEqual(members, {'alice', 'bob', 'carol'})

        # nothing left to do afterwards
        self.store.calls.clear()
        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Synced)
        self.assertNotIn('upload', self.store.calls)
        self.assertNotIn('download', self.store.calls)

    def test_change_during_upload_is_not_lost(self):
        group = self.synced_group()
        # a change stamped after the upload started still counts as local
        meta = self.orchestrator.get_metadata(group.id)
        self.orchestrator.update_metadata(group.id, local_last_modified=meta.last_sync_time + datetime.timedelta(seconds=1))
        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Synced)
        self.assertEqual(self.orchestrator.get_metadata(group.id).version, 2)

    def test_missing_remote_file_is_recreated(self):
        group = self.synced_group()
        old_file = self.orchestrator.get_metadata(group.id).remote_file_id
        del self.store.files[old_file]

        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Synced)
        meta = self.orchestrator.get_metadata(group.id)
        self.assertNotEqual(meta.remote_file_id, old_file)
        self.assertIn(meta.remote_file_id, self.store.files)

    def test_failure_is_recorded_and_retried(self):
        group = self.new_group()
        self.store.offline = True
        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Error)
        meta = self.orchestrator.get_metadata(group.id)
        self.assertIn('offline', meta.error_message)
        self.assertGreater(self.queue.pending_count(group.id), 0)

        self.store.offline = False
        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Synced)
        self.assertIsNone(self.orchestrator.get_metadata(group.id).error_message)
        self.assertEqual(self.queue.pending_count(group.id), 0)

    def test_invalid_remote_snapshot(self):
        group = self.synced_group()
        file_id = self.orchestrator.get_metadata(group.id).remote_file_id
        self.store.files[file_id]['data'] = b'{"broken": true}'
        self.store.files[file_id]['version'] = 5

        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Error)
        # the local copy is untouched
        self.assertEqual(self.database.get(Group, group.id).name, 'Trip')

    def test_sync_not_enabled(self):
        self.assertEqual(self.orchestrator.sync_group('unknown'), SyncStatus.NotSynced)
        with self.assertRaises(status.GroupNotFoundException):
            self.orchestrator.enable_sync('unknown')

    def test_enable_and_disable_sync(self):
        self.database.save(Group(id='g1', name='Local', creator_id='alice'))
        meta = self.orchestrator.enable_sync('g1')
        self.assertEqual(meta.status, SyncStatus.NotSynced)
        self.assertEqual(self.orchestrator.enable_sync('g1'), meta)

        self.assertTrue(self.orchestrator.disable_sync('g1'))
        self.assertFalse(self.orchestrator.disable_sync('g1'))
        self.assertEqual(self.orchestrator.get_sync_status('g1'), SyncStatus.NotSynced)

    def test_illegal_transition(self):
        group = self.new_group()
        with self.assertRaises(status.IllegalTransitionException):
            self.orchestrator.update_metadata(group.id, SyncStatus.Synced)
        self.assertEqual(self.orchestrator.get_sync_status(group.id), SyncStatus.PendingUpload)

    def test_status_signal(self):
        group = self.new_group()
        with capture_signal(signals.syncStatusChanged) as received:
            self.orchestrator.sync_group(group.id)
        self.assertEqual(received, [(group.id, 'Syncing'), (group.id, 'Synced')])

    def test_cancelled_sync(self):
        group = self.new_group()
        cancel = threading.Event()
        cancel.set()
        self.assertEqual(self.orchestrator.sync_group(group.id, cancel_event=cancel), SyncStatus.PendingUpload)
        self.assertEqual(self.store.files, {})

    def test_busy_group_is_skipped(self):
        group = self.new_group()
        with self.orchestrator.locks.hold(group.id):
            self.assertEqual(
                self.orchestrator.sync_group(group.id, blocking=False), SyncStatus.PendingUpload
            )
        self.assertEqual(self.store.files, {})

    def test_recover_interrupted_syncs(self):
        clean = self.synced_group('Clean')
        dirty = self.synced_group('Dirty')
        self.groups.update_group(self.database.get(Group, dirty.id).copy(name='Dirty 2'))
        for group in (clean, dirty):
            self.orchestrator.update_metadata(group.id, SyncStatus.Syncing)

        self.assertEqual(sorted(self.orchestrator.recover()), sorted([clean.id, dirty.id]))
        self.assertEqual(self.orchestrator.get_sync_status(clean.id), SyncStatus.Synced)
        self.assertEqual(self.orchestrator.get_sync_status(dirty.id), SyncStatus.PendingUpload)

    def test_last_sync_time(self):
        self.assertIsNone(self.orchestrator.last_sync_time())
        self.synced_group('One')
        second = self.synced_group('Two')
        self.assertEqual(
            self.orchestrator.last_sync_time(), self.orchestrator.get_metadata(second.id).last_sync_time
        )
        self.assertGreater(self.orchestrator.last_sync_time(), EPOCH)

    def test_push_and_pull(self):
        group = self.synced_group()
        with self.orchestrator.locks.hold(group.id):
            meta = self.orchestrator.push_group(group.id)
        self.assertEqual(meta.version, 2)

        with self.orchestrator.locks.hold(group.id):
            meta = self.orchestrator.pull_group(group.id)
        self.assertEqual(meta.status, SyncStatus.Synced)

        self.database.save(Group(id='local', name='Local', creator_id='alice'))
        self.orchestrator.enable_sync('local')
        with self.assertRaises(status.RemoteNotFoundException):
            self.orchestrator.pull_group('local')


class DiscoveryTest(SyncTestCase):

    def _publish(self, group_id: str, version: int = 3) -> str:
        snapshot = GroupSnapshot(
            group=Group(id=group_id, name='Shared with me', creator_id='bob'),
            members=[GroupMember(id=f'{group_id}-m1', group_id=group_id, user_id='bob'),
                     GroupMember(id=f'{group_id}-m2', group_id=group_id, user_id='alice')],
            version=version,
            last_modified=self.clock(),
        )
        return self.store.upload(group_id, snapshot.to_json(), version=version, last_modified=snapshot.last_modified)

    def test_download_remote_groups(self):
        own = self.synced_group()
        self._publish('shared')
        with capture_signal(signals.groupDownloaded) as received:
            downloaded = self.orchestrator.download_remote_groups('alice')

        self.assertEqual(downloaded, ['shared'])
        self.assertEqual(received, ['shared'])
        self.assertEqual(self.database.get(Group, 'shared').name, 'Shared with me')
        meta = self.orchestrator.get_metadata('shared')
        self.assertEqual(meta.status, SyncStatus.Synced)
        self.assertEqual(meta.version, 3)

        # known groups are left alone
        self.assertEqual(self.orchestrator.download_remote_groups('alice'), [])
        self.assertEqual(self.orchestrator.get_metadata(own.id).version, 1)

        # a downloaded group syncs cleanly afterwards
        self.assertEqual(self.orchestrator.sync_group('shared'), SyncStatus.Synced)
        self.assertEqual(self.orchestrator.get_metadata('shared').version, 3)

    def test_mismatched_snapshot_is_skipped(self):
        file_id = self._publish('shared')
        self.store.files[file_id]['group_id'] = 'other'
        self.assertEqual(self.orchestrator.download_remote_groups(), [])
        self.assertIsNone(self.database.get(Group, 'other'))

    def test_tick(self):
        first = self.new_group('First')
        conflicted = self.synced_group('Conflicted')
        busy = self.new_group('Busy')
        self.orchestrator.update_metadata(conflicted.id, SyncStatus.Syncing)
        self.orchestrator.update_metadata(conflicted.id, SyncStatus.Conflict)
        self._publish('shared')

        with self.orchestrator.locks.hold(busy.id):
            self.assertEqual(self.orchestrator.tick(), 1)

        self.assertEqual(self.orchestrator.get_sync_status(first.id), SyncStatus.Synced)
        self.assertEqual(self.orchestrator.get_sync_status(conflicted.id), SyncStatus.Conflict)
        self.assertEqual(self.orchestrator.get_sync_status(busy.id), SyncStatus.PendingUpload)
        self.assertIsNotNone(self.database.get(Group, 'shared'))

    def test_tick_after_cancel(self):
        self.new_group()
        self.orchestrator.cancel_event.set()
        self.assertEqual(self.orchestrator.tick(), 0)
        self.assertEqual(self.store.files, {})

    def test_unexpected_errors_do_not_escape_tasks(self):
        group = self.new_group()
        with mock.patch.object(self.orchestrator, 'sync_group', side_effect=RuntimeError('boom')):
            with self.assertLogs(level='ERROR'):
                self.orchestrator._run_sync_task(group.id)


class ConflictScenarioTest(SyncTestCase):

    def _conflict(self) -> Group:
        group = self.synced_group()
        self.groups.add_expense(group.id, 'Local dinner', 80, 'alice', participants=['alice', 'bob'])
        self.remote_version = self.remote_edit(group.id, lambda s: s.members.append(
            GroupMember(id='m-carol', group_id=group.id, user_id='carol')
        ))
        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Conflict)
        return group

    def test_both_sides_changed(self):
        with capture_signal(signals.conflictDetected) as received:
            group = self._conflict()

        self.assertEqual(received, [group.id])
        meta = self.orchestrator.get_metadata(group.id)
        self.assertEqual(meta.error_message, CONFLICT_MESSAGE)
        # nothing was overwritten on either side
        self.assertEqual(len(self.database.get_all(GroupMember, group_id=group.id)), 2)
        remote = GroupSnapshot.from_json(self.store.files[meta.remote_file_id]['data'])
        self.assertEqual(remote.expenses, [])

        # further syncs leave it alone
        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Conflict)
        self.assertEqual(self.orchestrator.tick(), 0)

    def test_queue_does_not_overwrite_remote_changes(self):
        group = self.synced_group()

        def rename(snapshot: GroupSnapshot) -> None:
            snapshot.group = snapshot.group.copy(name='Renamed remotely')

        remote_version = self.remote_edit(group.id, rename)
        self.groups.add_expense(group.id, 'Local dinner', 80, 'alice', participants=['alice', 'bob'])

        self.assertEqual(self.queue.process_queue('alice'), 0)
        meta = self.orchestrator.get_metadata(group.id)
        self.assertEqual(meta.status, SyncStatus.Conflict)
        remote = GroupSnapshot.from_json(self.store.files[meta.remote_file_id]['data'])
        self.assertEqual(remote.version, remote_version)
        self.assertEqual(remote.group.name, 'Renamed remotely')
        self.assertEqual(remote.expenses, [])
        self.assertGreater(self.queue.pending_count(group.id), 0)

    def test_queue_uploads_when_remote_is_unchanged(self):
        group = self.synced_group()
        self.groups.add_expense(group.id, 'Local dinner', 80, 'alice', participants=['alice', 'bob'])

        self.assertGreater(self.queue.process_queue('alice'), 0)
        meta = self.orchestrator.get_metadata(group.id)
        self.assertEqual(meta.status, SyncStatus.Synced)
        remote = GroupSnapshot.from_json(self.store.files[meta.remote_file_id]['data'])
        self.assertEqual([e.description for e in remote.expenses], ['Local dinner'])
        self.assertEqual(self.queue.pending_count(group.id), 0)

    def test_group_metadata_is_merged(self):
        group = self.synced_group()
        self.groups.add_expense(group.id, 'Local dinner', 80, 'alice', participants=['alice', 'bob'])

        def rename(snapshot: GroupSnapshot) -> None:
            snapshot.group = snapshot.group.copy(
                name='Renamed remotely', updated_at=snapshot.group.updated_at + datetime.timedelta(hours=1)
            )

        self.remote_edit(group.id, rename)
        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Conflict)
        self.assertEqual(self.database.get(Group, group.id).name, 'Renamed remotely')

    def test_resolve_keeping_local(self):
        group = self._conflict()
        self.assertTrue(self.resolver.resolve_conflict(group.id, keep_local=True))

        meta = self.orchestrator.get_metadata(group.id)
        self.assertEqual(meta.status, SyncStatus.Synced)
        self.assertEqual(meta.version, self.remote_version + 1)
        self.assertEqual(self.queue.pending_count(group.id), 0)

        remote = GroupSnapshot.from_json(self.store.files[meta.remote_file_id]['data'])
        self.assertEqual([e.description for e in remote.expenses], ['Local dinner'])
        self.assertEqual({m.user_id for m in remote.members}, {'alice', 'bob'})

        # resolving twice is a no-op
        self.assertFalse(self.resolver.resolve_conflict(group.id, keep_local=True))
        self.assertEqual(self.orchestrator.get_metadata(group.id).version, self.remote_version + 1)

    def test_resolve_keeping_remote(self):
        group = self._conflict()
        self.assertTrue(self.resolver.resolve_conflict(group.id, keep_local=False))

        meta = self.orchestrator.get_metadata(group.id)
        self.assertEqual(meta.status, SyncStatus.Synced)
        self.assertEqual(meta.version, self.remote_version)
        self.assertEqual(self.queue.pending_count(group.id), 0)
        self.assertEqual(self.database.get_snapshot(group.id).expenses, [])
        self.assertEqual(
            {m.user_id for m in self.database.get_all(GroupMember, group_id=group.id)}, {'alice', 'bob', 'carol'}
        )

        # the group is in step with the remote copy again
        self.store.calls.clear()
        self.assertEqual(self.orchestrator.sync_group(group.id), SyncStatus.Synced)
        self.assertNotIn('upload', self.store.calls)

    def test_failed_resolution_stays_in_conflict(self):
        group = self._conflict()
        self.store.offline = True
        with self.assertRaises(status.RemoteTransientException):
            self.resolver.resolve_conflict(group.id, keep_local=True)
        self.assertEqual(self.orchestrator.get_sync_status(group.id), SyncStatus.Conflict)
        self.assertGreater(self.queue.pending_count(group.id), 0)

        self.store.offline = False
        self.assertTrue(self.resolver.resolve_conflict(group.id, keep_local=True))

    def test_resolve_without_conflict(self):
        group = self.synced_group()
        self.assertFalse(self.resolver.resolve_conflict(group.id, keep_local=True))
        with self.assertRaises(status.GroupNotFoundException):
            self.resolver.resolve_conflict('unknown', keep_local=True)

    def test_detect_conflicts(self):
        group = self._conflict()
        messages = self.resolver.detect_conflicts(group.id)
        self.assertEqual(messages[0], CONFLICT_MESSAGE)
        self.assertTrue(any('"Local dinner" exists only locally' in m for m in messages))
        self.assertTrue(any('"carol" exists only remotely' in m for m in messages))
        self.assertTrue(any('bob@example.com' in m for m in messages))

    def test_detect_conflicts_without_conflict(self):
        group = self.synced_group()
        self.assertEqual(self.resolver.detect_conflicts(group.id), [])


class GroupLockArenaTest(SyncTestCase):

    def test_try_acquire(self):
        arena = GroupLockArena()
        self.assertTrue(arena.try_acquire('g1'))
        self.assertTrue(arena.is_locked('g1'))
        self.assertFalse(arena.try_acquire('g1'))
        self.assertTrue(arena.try_acquire('g2'))
        arena.release('g1')
        self.assertFalse(arena.is_locked('g1'))

    def test_hold_waits(self):
        arena = GroupLockArena()
        order = []
        arena.try_acquire('g1')

        def worker():
            with arena.hold('g1'):
                order.append('worker')

        thread = threading.Thread(target=worker)
        thread.start()
        order.append('main')
        arena.release('g1')
        thread.join(5)
        self.assertEqual(order, ['main', 'worker'])


class SyncSchedulerTest(SyncTestCase):

    def test_start_and_stop(self):
        scheduler = SyncScheduler(self.orchestrator)
        with mock.patch.object(self.orchestrator, 'recover', return_value=[]) as recover:
            self.assertTrue(scheduler.start())
            self.assertTrue(scheduler.start())
        recover.assert_called_once()
        self.assertTrue(scheduler.is_active)
        self.assertEqual(scheduler.interval, 30)

        scheduler.stop()
        self.assertFalse(scheduler.is_active)
        self.assertTrue(self.orchestrator.cancel_event.is_set())

        # starting again clears the cancellation
        self.assertTrue(scheduler.start())
        self.assertFalse(self.orchestrator.cancel_event.is_set())
        scheduler.stop()

    def test_disabled_in_settings(self):
        config = lib.settings.get_section('sync')
        config['enabled'] = False
        lib.settings.set_section('sync', config)

        scheduler = SyncScheduler(self.orchestrator)
        self.assertFalse(scheduler.start())
        self.assertFalse(scheduler.is_active)

    def test_settings_changes_are_applied(self):
        scheduler = SyncScheduler(self.orchestrator)
        scheduler.start()

        config = lib.settings.get_section('sync')
        config['interval_seconds'] = 60
        lib.settings.set_section('sync', config)
        self.assertEqual(scheduler.interval, 60)

        config['enabled'] = False
        lib.settings.set_section('sync', config)
        self.assertFalse(scheduler.is_active)

    def test_timeout_ticks_the_orchestrator(self):
        scheduler = SyncScheduler(self.orchestrator)
        with mock.patch.object(self.orchestrator, 'tick', return_value=0) as tick:
            scheduler.on_timeout()
            tick.assert_not_called()

            scheduler.start()
            scheduler.on_timeout()
            tick.assert_called_once()
        scheduler.stop()

    def test_interrupted_sync_is_recovered_on_start(self):
        group = self.synced_group()
        self.orchestrator.update_metadata(group.id, SyncStatus.Syncing)
        scheduler = SyncScheduler(self.orchestrator)
        scheduler.start()
        scheduler.stop()
        self.assertEqual(self.orchestrator.get_sync_status(group.id), SyncStatus.Synced)

    def test_queued_changes_without_sync(self):
        self.database.save(Group(id='g1', name='x', creator_id='alice'))
        self.queue.enqueue('g1', EntityType.Group, 'g1', ChangeOperation.Create)
        self.assertEqual(self.queue.process_queue('alice'), 1)
        self.assertEqual(self.orchestrator.get_sync_status('g1'), SyncStatus.Synced)
