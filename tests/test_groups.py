"""Tests for CostSharing.core.groups."""
import decimal
import json

from CostSharing.core.groups import GroupService
from CostSharing.core.models import (
    ChangeOperation, EntityType, ExpenseSplit, MemberRole, SettlementStatus, SplitType, SyncStatus
)
from CostSharing.status import status
from tests.base import BaseEngineTestCase, EPOCH


class GroupServiceTestCase(BaseEngineTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.groups = GroupService(self.database, self.queue, self.orchestrator, store=self.store, manager=self.auth)
        self.group = self.groups.create_group('Flat')
        self.groups.add_member(self.group.id, 'bob', email='bob@example.com')
        self.groups.add_member(self.group.id, 'carol')


class GroupTest(GroupServiceTestCase):

    def test_create_group(self):
        members = self.groups.get_members(self.group.id)
        admin = [m for m in members if m.user_id == 'alice'][0]
        self.assertEqual(admin.role, MemberRole.Admin)
        self.assertEqual(admin.email, 'alice@example.com')
        self.assertEqual(self.group.currency, 'AUD')
        self.assertEqual(self.orchestrator.get_sync_status(self.group.id), SyncStatus.PendingUpload)

        changes = self.queue.pending_changes(self.group.id)
        self.assertEqual(changes[0].entity_type, EntityType.Group)
        self.assertEqual(changes[0].operation, ChangeOperation.Create)
        self.assertEqual(json.loads(changes[0].payload)['name'], 'Flat')

    def test_create_group_requires_a_name(self):
        with self.assertRaises(status.ValidationException):
            self.groups.create_group('   ')

    def test_create_group_requires_a_user(self):
        service = GroupService(self.database, self.queue, self.orchestrator)
        with self.assertRaises(status.AuthenticationException):
            service.create_group('Nobody')

    def test_list_groups(self):
        self.groups.create_group('Band')
        self.assertEqual([g.name for g in self.groups.list_groups()], ['Band', 'Flat'])
        self.assertEqual([g.name for g in self.groups.list_groups('bob')], ['Flat'])
        self.assertEqual(self.groups.list_groups('dave'), [])

    def test_update_group(self):
        updated = self.groups.update_group(self.group.copy(name=' Shared flat ', updated_at=EPOCH))
        self.assertEqual(updated.name, 'Shared flat')
        self.assertGreater(updated.updated_at, EPOCH)
        self.assertEqual(self.groups.get_group(self.group.id).name, 'Shared flat')

    def test_unknown_group(self):
        with self.assertRaises(status.GroupNotFoundException):
            self.groups.get_group('missing')
        with self.assertRaises(status.GroupNotFoundException):
            self.groups.add_member('missing', 'bob')


class MemberTest(GroupServiceTestCase):

    def test_duplicate_member(self):
        with self.assertRaises(status.ValidationException):
            self.groups.add_member(self.group.id, 'bob')

    def test_member_is_shared_once_uploaded(self):
        self.orchestrator.sync_group(self.group.id)
        file_id = self.orchestrator.get_metadata(self.group.id).remote_file_id

        self.groups.add_member(self.group.id, 'dave', email='dave@example.com')
        self.assertEqual(self.store.permissions[file_id], ['dave@example.com'])

        self.assertTrue(self.groups.remove_member(self.group.id, 'dave'))
        self.assertEqual(self.store.permissions[file_id], [])

    def test_sharing_failure_does_not_stop_the_change(self):
        self.orchestrator.sync_group(self.group.id)
        self.store.fail_next = status.RemoteForbiddenException('no access')
        with self.assertLogs(level='WARNING'):
            member = self.groups.add_member(self.group.id, 'dave', email='dave@example.com')
        self.assertIn(member.user_id, [m.user_id for m in self.groups.get_members(self.group.id)])

    def test_remove_unknown_member(self):
        self.assertFalse(self.groups.remove_member(self.group.id, 'dave'))


class ExpenseTest(GroupServiceTestCase):

    def test_even_expense(self):
        expense, splits = self.groups.add_expense(self.group.id, 'Groceries', '100', 'alice',
                                                  participants=['alice', 'bob', 'carol'])
        self.assertEqual(expense.split_type, SplitType.Even)
        self.assertEqual(expense.created_by, 'alice')
        self.assertEqual(sum(s.amount for s in splits), decimal.Decimal('100.00'))
        self.assertTrue(all(s.expense_id == expense.id for s in splits))

        stored = self.database.get_all(ExpenseSplit, expense_id=expense.id)
        self.assertEqual(len(stored), 3)
        change = self.queue.pending_changes(self.group.id)[-1]
        self.assertEqual(change.entity_id, expense.id)
        self.assertEqual(len(json.loads(change.payload)['splits']), 3)

    def test_custom_expense(self):
        expense, splits = self.groups.add_expense(self.group.id, 'Rent', 1000, 'bob',
                                                  percentages={'alice': 50, 'bob': 30, 'carol': 20})
        self.assertEqual(expense.split_type, SplitType.Custom)
        self.assertEqual({s.user_id: s.amount for s in splits}, {
            'alice': decimal.Decimal('500.00'),
            'bob': decimal.Decimal('300.00'),
            'carol': decimal.Decimal('200.00'),
        })

    def test_expense_validation(self):
        with self.assertRaises(status.ValidationException):
            self.groups.add_expense(self.group.id, '', 10, 'alice', participants=['alice'])
        with self.assertRaises(status.ValidationException):
            self.groups.add_expense(self.group.id, 'Taxi', 10, 'dave', participants=['alice'])
        with self.assertRaises(status.ValidationException):
            self.groups.add_expense(self.group.id, 'Taxi', 10, 'alice', participants=['alice', 'dave'])
        with self.assertRaises(status.ValidationException):
            self.groups.add_expense(self.group.id, 'Taxi', 10, 'alice')
        with self.assertRaises(status.ValidationException):
            self.groups.add_expense(self.group.id, 'Taxi', 10, 'alice',
                                    participants=['alice'], percentages={'alice': 100})
        with self.assertRaises(status.InvalidAmountException):
            self.groups.add_expense(self.group.id, 'Taxi', 'ten', 'alice', participants=['alice'])
        with self.assertRaises(status.InvalidPercentageSumException):
            self.groups.add_expense(self.group.id, 'Taxi', 10, 'alice', percentages={'alice': 60, 'bob': 30})

    def test_update_expense_keeps_participants(self):
        expense, _ = self.groups.add_expense(self.group.id, 'Dinner', 90, 'alice', participants=['alice', 'bob'])
        updated, splits = self.groups.update_expense(expense.id, total=60)

        self.assertEqual(updated.total_amount, decimal.Decimal('60.00'))
        self.assertEqual(updated.description, 'Dinner')
        self.assertEqual({s.user_id: s.amount for s in splits},
                         {'alice': decimal.Decimal('30.00'), 'bob': decimal.Decimal('30.00')})
        self.assertEqual(len(self.groups.get_splits(expense.id)), 2)

    def test_update_expense_keeps_percentages(self):
        expense, _ = self.groups.add_expense(self.group.id, 'Rent', 100, 'alice',
                                             percentages={'alice': 75, 'bob': 25})
        _, splits = self.groups.update_expense(expense.id, total=200)
        self.assertEqual({s.user_id: s.amount for s in splits},
                         {'alice': decimal.Decimal('150.00'), 'bob': decimal.Decimal('50.00')})

    def test_update_expense_keeps_fractional_percentages(self):
        users = ['alice', 'bob', 'carol', 'dave', 'erin', 'frank', 'grace']
        for user_id in users[3:]:
            self.groups.add_member(self.group.id, user_id)
        expense, _ = self.groups.add_expense(self.group.id, 'Rent', 700, 'alice',
                                             percentages={u: '14.2857142857' for u in users})

        stored = self.groups.get_splits(expense.id)
        self.assertTrue(all(s.percentage == decimal.Decimal('14.2857142857') for s in stored))

        updated, splits = self.groups.update_expense(expense.id, description='Rent (June)')
        self.assertEqual(updated.description, 'Rent (June)')
        self.assertEqual(updated.split_type, SplitType.Custom)
        self.assertEqual(sum(s.amount for s in splits), decimal.Decimal('700.00'))
        self.assertEqual(len(splits), 7)

    def test_update_expense_coalesces_in_queue(self):
        expense, _ = self.groups.add_expense(self.group.id, 'Dinner', 90, 'alice', participants=['alice', 'bob'])
        self.groups.update_expense(expense.id, description='Late dinner', participants=['bob', 'carol'])

        changes = [c for c in self.queue.pending_changes(self.group.id) if c.entity_id == expense.id]
        self.assertEqual(len(changes), 1)
        self.assertEqual(changes[0].operation, ChangeOperation.Create)
        self.assertEqual(json.loads(changes[0].payload)['description'], 'Late dinner')

    def test_delete_expense(self):
        expense, _ = self.groups.add_expense(self.group.id, 'Dinner', 90, 'alice', participants=['alice', 'bob'])
        self.groups.delete_expense(expense.id)

        self.assertEqual(self.groups.get_splits(expense.id), [])
        with self.assertRaises(status.EntityNotFoundException):
            self.groups.get_expense(expense.id)
        # created and deleted before any upload
        self.assertEqual([c for c in self.queue.pending_changes(self.group.id) if c.entity_id == expense.id], [])


class SettlementTest(GroupServiceTestCase):

    def test_record_and_confirm(self):
        settlement = self.groups.record_settlement(self.group.id, 'bob', 'alice', '25.5')
        self.assertEqual(settlement.status, SettlementStatus.Pending)
        self.assertEqual(settlement.amount, decimal.Decimal('25.50'))
        self.assertEqual(settlement.recorded_by, 'alice')

        confirmed = self.groups.confirm_settlement(settlement.id)
        self.assertEqual(confirmed.status, SettlementStatus.Confirmed)
        self.assertEqual(confirmed.confirmed_by, 'alice')
        self.assertEqual(self.groups.get_settlement(settlement.id).status, SettlementStatus.Confirmed)

        with self.assertRaises(status.ValidationException):
            self.groups.cancel_settlement(settlement.id)

    def test_cancel(self):
        settlement = self.groups.record_settlement(self.group.id, 'bob', 'alice', 10)
        cancelled = self.groups.cancel_settlement(settlement.id)
        self.assertEqual(cancelled.status, SettlementStatus.Cancelled)
        with self.assertRaises(status.ValidationException):
            self.groups.confirm_settlement(settlement.id, user_id='bob')

    def test_settlement_validation(self):
        with self.assertRaises(status.InvalidAmountException):
            self.groups.record_settlement(self.group.id, 'bob', 'alice', 0)
        with self.assertRaises(status.InvalidAmountException):
            self.groups.record_settlement(self.group.id, 'bob', 'alice', -5)
        with self.assertRaises(status.ValidationException):
            self.groups.record_settlement(self.group.id, 'bob', 'bob', 5)
        with self.assertRaises(status.ValidationException):
            self.groups.record_settlement(self.group.id, 'bob', 'dave', 5)
        with self.assertRaises(status.EntityNotFoundException):
            self.groups.get_settlement('missing')
