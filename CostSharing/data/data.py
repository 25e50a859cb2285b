"""Read API for balances and history.

This module loads a group's records from the local database, runs them through the ledger and the
simplification engine, and returns the results as pandas DataFrames ready for display. Nothing is
cached: every call reflects the current state of the local store.
"""
import functools
import logging
from typing import List, Optional

import pandas as pd

from ..core import ledger
from ..core import simplify
from ..core.database import DatabaseAPI
from ..core.models import Debt, Expense, ExpenseSplit, Group, GroupMember, Settlement, SimplifiedTransaction, ZERO

DEBT_COLUMNS: List[str] = ['debtor_id', 'creditor_id', 'amount']
TRANSACTION_COLUMNS: List[str] = ['from_user_id', 'to_user_id', 'amount']
SUMMARY_COLUMNS: List[str] = ['user_id', 'paid', 'owed', 'balance']
HISTORY_COLUMNS: List[str] = [
    'date', 'kind', 'group_id', 'group_name', 'id', 'description', 'paid_by', 'paid_to', 'amount', 'share', 'status'
]


def database():
    """Decorator injecting a :class:`~CostSharing.core.database.DatabaseAPI`.

    The wrapped function receives the instance passed as the ``db`` keyword, or one opened on the
    default database path.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, db: Optional[DatabaseAPI] = None, **kwargs):
            if db is None:
                db = DatabaseAPI()
            return func(db, *args, **kwargs)

        return wrapper

    return decorator


def _group_debts(db: DatabaseAPI, group_id: str) -> List[Debt]:
    expenses = db.get_all(Expense, group_id=group_id)
    splits: List[ExpenseSplit] = []
    for expense in expenses:
        splits.extend(db.get_all(ExpenseSplit, expense_id=expense.id))
    settlements = db.get_all(Settlement, group_id=group_id)
    return ledger.calculate_debts(expenses, splits, settlements)


def _debts_frame(debts: List[Debt]) -> pd.DataFrame:
    if not debts:
        return pd.DataFrame(columns=DEBT_COLUMNS)
    return pd.DataFrame(
        [{'debtor_id': d.debtor_id, 'creditor_id': d.creditor_id, 'amount': d.amount} for d in debts],
        columns=DEBT_COLUMNS,
    )


@database()
def get_group_debts(db: DatabaseAPI, group_id: str) -> pd.DataFrame:
    """Return the pairwise debts of a group.

    Args:
        group_id (str): The group.

    Returns:
        pd.DataFrame: Columns ``debtor_id, creditor_id, amount``. Amounts are Decimals.
    """
    return _debts_frame(_group_debts(db, group_id))


@database()
def get_simplified_debts(db: DatabaseAPI, group_id: str) -> pd.DataFrame:
    """Return the fewest payments that settle a group.

    Returns:
        pd.DataFrame: Columns ``from_user_id, to_user_id, amount``, largest payments first.
    """
    transactions: List[SimplifiedTransaction] = simplify.simplify_debts(_group_debts(db, group_id))
    if not transactions:
        return pd.DataFrame(columns=TRANSACTION_COLUMNS)
    return pd.DataFrame(
        [{'from_user_id': t.from_user_id, 'to_user_id': t.to_user_id, 'amount': t.amount} for t in transactions],
        columns=TRANSACTION_COLUMNS,
    )


@database()
def get_member_summary(db: DatabaseAPI, group_id: str) -> pd.DataFrame:
    """Summarise each member's position in a group.

    ``paid`` is the total of the expenses the member paid, ``owed`` the total of their shares and
    ``balance`` their net position after confirmed settlements: positive when the group owes them.

    Returns:
        pd.DataFrame: Columns ``user_id, paid, owed, balance``, one row per member and per user
        appearing in the group's expenses.
    """
    expenses = db.get_all(Expense, group_id=group_id)
    splits: List[ExpenseSplit] = []
    for expense in expenses:
        splits.extend(db.get_all(ExpenseSplit, expense_id=expense.id))
    balances = ledger.net_balances(_group_debts(db, group_id))

    users = [m.user_id for m in db.get_all(GroupMember, group_id=group_id)]
    for user_id in [e.paid_by for e in expenses] + [s.user_id for s in splits] + list(balances):
        if user_id not in users:
            users.append(user_id)

    if not users:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)

    rows = []
    for user_id in sorted(users):
        rows.append({
            'user_id': user_id,
            'paid': sum((e.total_amount for e in expenses if e.paid_by == user_id), ZERO),
            'owed': sum((s.amount for s in splits if s.user_id == user_id), ZERO),
            'balance': balances.get(user_id, ZERO),
        })
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


@database()
def get_transaction_history(db: DatabaseAPI, user_id: str) -> pd.DataFrame:
    """Return every expense and settlement involving a user, across all groups, newest first.

    An expense involves the user when they paid it or have a share in it. ``share`` holds the
    user's part of an expense and is empty for settlements.

    Returns:
        pd.DataFrame: Columns as in :data:`HISTORY_COLUMNS`.
    """
    groups = {g.id: g.name for g in db.get_all(Group)}
    rows = []

    for expense in db.get_all(Expense):
        shares = {s.user_id: s.amount for s in db.get_all(ExpenseSplit, expense_id=expense.id)}
        if expense.paid_by != user_id and user_id not in shares:
            continue
        rows.append({
            'date': expense.expense_date,
            'kind': 'expense',
            'group_id': expense.group_id,
            'group_name': groups.get(expense.group_id),
            'id': expense.id,
            'description': expense.description,
            'paid_by': expense.paid_by,
            'paid_to': None,
            'amount': expense.total_amount,
            'share': shares.get(user_id),
            'status': None,
        })

    for settlement in db.get_all(Settlement):
        if user_id not in (settlement.paid_by, settlement.paid_to):
            continue
        rows.append({
            'date': settlement.settled_at,
            'kind': 'settlement',
            'group_id': settlement.group_id,
            'group_name': groups.get(settlement.group_id),
            'id': settlement.id,
            'description': None,
            'paid_by': settlement.paid_by,
            'paid_to': settlement.paid_to,
            'amount': settlement.amount,
            'share': None,
            'status': str(settlement.status),
        })

    if not rows:
        return pd.DataFrame(columns=HISTORY_COLUMNS)

    df = pd.DataFrame(rows, columns=HISTORY_COLUMNS)
    df['date'] = pd.to_datetime(df['date'], utc=True)
    df = df.sort_values(by=['date', 'id'], ascending=[False, True], kind='stable').reset_index(drop=True)
    logging.debug(f'Found {len(df)} transaction(s) involving "{user_id}".')
    return df
