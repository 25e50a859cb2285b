"""Group, member, expense and settlement mutations.

Every mutation follows the same path: validate the input, write the local store, queue the change
for upload and tell the orchestrator that the group changed. Nothing here talks to the network except
sharing and unsharing the group's remote file, which is best-effort.
"""
import datetime
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import split
from .database import DatabaseAPI
from .models import (
    ChangeOperation, EntityType, Expense, ExpenseSplit, Group, GroupMember, MemberRole, Record,
    Settlement, SettlementStatus, SplitType, ZERO, new_id, parse_datetime, to_money, utc_now
)
from .queue import OfflineQueue
from ..status import status


def _require(value: Any, name: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise status.ValidationException(f'"{name}" is required.')


class GroupService:
    """Write path for a user's groups.

    Args:
        database: The local store.
        queue: The offline queue receiving every change.
        orchestrator: The :class:`~CostSharing.core.sync.SyncOrchestrator` notified of every change.
        store: Remote snapshot store used to share group files. Sharing is skipped when None.
        manager: Identity provider of the acting user.
    """

    def __init__(self, database: DatabaseAPI, queue: OfflineQueue, orchestrator, store=None, manager=None) -> None:
        self._database = database
        self._queue = queue
        self._orchestrator = orchestrator
        self._store = store
        self._manager = manager

    def _current_user(self) -> str:
        if self._manager is None:
            raise status.AuthenticationException('No identity provider configured.')
        return self._manager.current_user_id()

    def _changed(self, group_id: str, entity_type: EntityType, entity_id: str,
                 operation: ChangeOperation, payload: Optional[Dict[str, Any]] = None) -> None:
        self._queue.enqueue(group_id, entity_type, entity_id, operation, payload)
        self._orchestrator.mark_local_change(group_id)

    def _remote_file_id(self, group_id: str) -> Optional[str]:
        meta = self._orchestrator.get_metadata(group_id)
        return meta.remote_file_id if meta else None

    # Groups

    def get_group(self, group_id: str) -> Group:
        group = self._database.get(Group, group_id)
        if group is None:
            raise status.GroupNotFoundException(group_id)
        return group

    def list_groups(self, user_id: Optional[str] = None) -> List[Group]:
        """Return the groups ``user_id`` (default: the current user) is a member of."""
        user_id = user_id or self._current_user()
        group_ids = {m.group_id for m in self._database.get_all(GroupMember, user_id=user_id)}
        return [g for g in self._database.get_all(Group, order_by='name') if g.id in group_ids]

    def get_members(self, group_id: str) -> List[GroupMember]:
        return self._database.get_all(GroupMember, group_id=group_id)

    def create_group(self, name: str, currency: str = 'AUD') -> Group:
        """Create a group with the current user as its admin and enable sync for it."""
        _require(name, 'name')
        user_id = self._current_user()
        now = utc_now()

        group = Group(id=new_id(), name=name.strip(), creator_id=user_id, created_at=now, updated_at=now,
                      currency=currency or 'AUD')
        email = self._manager.current_user_email() if self._manager is not None else None
        admin = GroupMember(id=new_id(), group_id=group.id, user_id=user_id, email=email,
                            role=MemberRole.Admin, joined_at=now, added_by=user_id)
        self._database.save_many([group, admin])

        self._orchestrator.enable_sync(group.id)
        self._queue.enqueue(group.id, EntityType.Group, group.id, ChangeOperation.Create, group.to_dict())
        self._changed(group.id, EntityType.Member, admin.id, ChangeOperation.Create, admin.to_dict())
        logging.info(f'Created group "{group.name}" ({group.id}).')
        return group

    def update_group(self, group: Group) -> Group:
        """Save changed group details. The group's ``updated_at`` is set to now."""
        _require(group.name, 'name')
        self.get_group(group.id)
        updated = group.copy(name=group.name.strip(), updated_at=utc_now())
        self._database.save(updated)
        self._changed(group.id, EntityType.Group, group.id, ChangeOperation.Update, updated.to_dict())
        return updated

    # Members

    def _get_member(self, group_id: str, user_id: str) -> Optional[GroupMember]:
        found = self._database.get_all(GroupMember, group_id=group_id, user_id=user_id)
        return found[0] if found else None

    def _require_members(self, group_id: str, user_ids: Sequence[str]) -> None:
        members = {m.user_id for m in self.get_members(group_id)}
        missing = [u for u in user_ids if u not in members]
        if missing:
            raise status.ValidationException(f'Not members of the group: {missing}.')

    def add_member(self, group_id: str, user_id: str, email: Optional[str] = None,
                   role: MemberRole = MemberRole.Member) -> GroupMember:
        """Add a member and share the group's remote file with them.

        A failure to share is logged; the member is added regardless.
        """
        self.get_group(group_id)
        _require(user_id, 'user_id')
        if self._get_member(group_id, user_id) is not None:
            raise status.ValidationException(f'"{user_id}" is already a member.')

        member = GroupMember(id=new_id(), group_id=group_id, user_id=user_id, email=email,
                             role=MemberRole(role), joined_at=utc_now(), added_by=self._current_user())
        self._database.save(member)
        self._changed(group_id, EntityType.Member, member.id, ChangeOperation.Create, member.to_dict())

        file_id = self._remote_file_id(group_id)
        if self._store is not None and file_id and email:
            try:
                self._store.set_permissions(file_id, [email])
            except status.RemoteStoreException as ex:
                logging.warning(f'Could not share group "{group_id}" with {email}: {ex}')
        return member

    def remove_member(self, group_id: str, user_id: str) -> bool:
        """Remove a member and revoke their access to the group's remote file.

        A failure to revoke access is logged; the member is removed regardless.

        Returns:
            bool: False if ``user_id`` was not a member.
        """
        self.get_group(group_id)
        member = self._get_member(group_id, user_id)
        if member is None:
            return False

        self._database.delete(GroupMember, member.id)
        self._changed(group_id, EntityType.Member, member.id, ChangeOperation.Delete, member.to_dict())

        file_id = self._remote_file_id(group_id)
        if self._store is not None and file_id and member.email:
            try:
                self._store.remove_permission(file_id, member.email)
            except status.RemoteStoreException as ex:
                logging.warning(f'Could not revoke access of {member.email} to group "{group_id}": {ex}')
        return True

    # Expenses

    def get_expense(self, expense_id: str) -> Expense:
        expense = self._database.get(Expense, expense_id)
        if expense is None:
            raise status.EntityNotFoundException(f'Expense "{expense_id}".')
        return expense

    def get_splits(self, expense_id: str) -> List[ExpenseSplit]:
        return self._database.get_all(ExpenseSplit, expense_id=expense_id)

    def _calculate_splits(self, group_id: str, total: Any, participants: Optional[Sequence[str]],
                          percentages: Optional[Dict[str, Any]]) -> Tuple[SplitType, List[ExpenseSplit]]:
        if participants and percentages:
            raise status.ValidationException('Give either participants or percentages, not both.')
        if percentages:
            self._require_members(group_id, list(percentages))
            return SplitType.Custom, split.custom_split(total, percentages)
        if participants:
            self._require_members(group_id, participants)
            return SplitType.Even, split.even_split(total, participants)
        raise status.ValidationException('An expense needs participants or percentages.')

    @staticmethod
    def _payload(expense: Expense, splits: List[ExpenseSplit]) -> Dict[str, Any]:
        payload = expense.to_dict()
        payload['splits'] = [s.to_dict() for s in splits]
        return payload

    def add_expense(self, group_id: str, description: str, total: Any, paid_by: str,
                    participants: Optional[Sequence[str]] = None,
                    percentages: Optional[Dict[str, Any]] = None,
                    expense_date: Optional[datetime.datetime] = None) -> Tuple[Expense, List[ExpenseSplit]]:
        """Record an expense.

        Args:
            group_id: The group the expense belongs to.
            description: What the money was spent on.
            total: The amount paid.
            paid_by: The user who paid.
            participants: Users sharing the expense evenly.
            percentages: User id to percentage, for a custom split.
            expense_date: When the expense happened, now by default.

        Returns:
            Tuple[Expense, List[ExpenseSplit]]: The saved expense and its splits.

        Raises:
            status.ValidationException: If a required field is missing or a user is not a member.
            status.InvalidAmountException: If the total is negative or not a number.
            status.InvalidPercentageSumException: If custom percentages do not sum to 100.
        """
        self.get_group(group_id)
        _require(description, 'description')
        _require(paid_by, 'paid_by')
        self._require_members(group_id, [paid_by])

        amount = to_money(total)
        split_type, splits = self._calculate_splits(group_id, amount, participants, percentages)

        now = utc_now()
        expense = Expense(
            id=new_id(), group_id=group_id, description=description.strip(), total_amount=amount,
            paid_by=paid_by, split_type=split_type, expense_date=parse_datetime(expense_date) or now,
            created_at=now, created_by=self._current_user(), updated_at=now,
        )
        splits = split.splits_for_expense(expense, splits)
        split.validate_splits(amount, splits)

        self._database.save_expense(expense, splits)
        self._changed(group_id, EntityType.Expense, expense.id, ChangeOperation.Create, self._payload(expense, splits))
        logging.info(f'Added expense "{expense.description}" ({amount}) to group "{group_id}".')
        return expense, splits

    def update_expense(self, expense_id: str, description: Optional[str] = None, total: Any = None,
                       paid_by: Optional[str] = None, participants: Optional[Sequence[str]] = None,
                       percentages: Optional[Dict[str, Any]] = None,
                       expense_date: Optional[datetime.datetime] = None) -> Tuple[Expense, List[ExpenseSplit]]:
        """Change an expense and recompute its splits.

        Omitted arguments keep their current value. When neither participants nor percentages are
        given the current participants (or percentages) are reused.
        """
        expense = self.get_expense(expense_id)
        current = self.get_splits(expense_id)

        if description is not None:
            _require(description, 'description')
        if paid_by is not None:
            self._require_members(expense.group_id, [paid_by])

        amount = to_money(total) if total is not None else expense.total_amount
        if not participants and not percentages:
            if expense.split_type == SplitType.Custom:
                percentages = {s.user_id: s.percentage for s in current}
            else:
                participants = [s.user_id for s in current]
        split_type, splits = self._calculate_splits(expense.group_id, amount, participants, percentages)

        updated = expense.copy(
            description=description.strip() if description is not None else expense.description,
            total_amount=amount,
            paid_by=paid_by or expense.paid_by,
            split_type=split_type,
            expense_date=parse_datetime(expense_date) or expense.expense_date,
            updated_at=utc_now(),
        )
        splits = split.splits_for_expense(updated, splits)
        split.validate_splits(amount, splits)

        self._database.save_expense(updated, splits)
        self._changed(
            updated.group_id, EntityType.Expense, updated.id, ChangeOperation.Update, self._payload(updated, splits)
        )
        return updated, splits

    def delete_expense(self, expense_id: str) -> None:
        """Delete an expense together with its splits."""
        expense = self.get_expense(expense_id)
        self._database.delete_expense(expense_id)
        self._changed(expense.group_id, EntityType.Expense, expense_id, ChangeOperation.Delete)
        logging.info(f'Deleted expense "{expense.description}" from group "{expense.group_id}".')

    # Settlements

    def get_settlement(self, settlement_id: str) -> Settlement:
        settlement = self._database.get(Settlement, settlement_id)
        if settlement is None:
            raise status.EntityNotFoundException(f'Settlement "{settlement_id}".')
        return settlement

    def _save_settlement(self, settlement: Settlement, operation: ChangeOperation) -> Settlement:
        self._database.save(settlement)
        self._changed(settlement.group_id, EntityType.Settlement, settlement.id, operation, settlement.to_dict())
        return settlement

    def record_settlement(self, group_id: str, paid_by: str, paid_to: str, amount: Any) -> Settlement:
        """Record a payment between two members. It counts towards debts once confirmed."""
        self.get_group(group_id)
        _require(paid_by, 'paid_by')
        _require(paid_to, 'paid_to')
        if paid_by == paid_to:
            raise status.ValidationException('A settlement needs two different users.')
        self._require_members(group_id, [paid_by, paid_to])

        value = to_money(amount)
        if value <= ZERO:
            raise status.InvalidAmountException(f'Settlement amount must be positive, got {value}.')

        now = utc_now()
        settlement = Settlement(
            id=new_id(), group_id=group_id, paid_by=paid_by, paid_to=paid_to, amount=value,
            status=SettlementStatus.Pending, settled_at=now, recorded_by=self._current_user(), updated_at=now,
        )
        return self._save_settlement(settlement, ChangeOperation.Create)

    def confirm_settlement(self, settlement_id: str, user_id: Optional[str] = None) -> Settlement:
        """Confirm a pending settlement.

        Raises:
            status.ValidationException: If the settlement is not pending.
        """
        settlement = self.get_settlement(settlement_id)
        if settlement.status != SettlementStatus.Pending:
            raise status.ValidationException(f'Settlement is {settlement.status}, not Pending.')
        confirmed = settlement.copy(
            status=SettlementStatus.Confirmed,
            confirmed_by=user_id or self._current_user(),
            updated_at=utc_now(),
        )
        return self._save_settlement(confirmed, ChangeOperation.Update)

    def cancel_settlement(self, settlement_id: str) -> Settlement:
        """Cancel a pending settlement.

        Raises:
            status.ValidationException: If the settlement is not pending.
        """
        settlement = self.get_settlement(settlement_id)
        if settlement.status != SettlementStatus.Pending:
            raise status.ValidationException(f'Settlement is {settlement.status}, not Pending.')
        cancelled = settlement.copy(status=SettlementStatus.Cancelled, updated_at=utc_now())
        return self._save_settlement(cancelled, ChangeOperation.Update)
