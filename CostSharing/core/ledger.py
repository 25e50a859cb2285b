"""Pairwise debt calculation.

The ledger keeps one signed balance per unordered pair of users. For a pair ``(a, b)`` with ``a < b`` a
positive balance means ``a`` owes ``b`` and a negative balance means ``b`` owes ``a``. Opposing debts
cancel, and a confirmed settlement counts as a debt in the opposite direction, so overpaying simply
flips who owes whom.

The result only depends on the set of records, never on the order they arrive in.
"""
import decimal
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from .models import (
    Debt, Expense, ExpenseSplit, Settlement, SettlementStatus, EPSILON, ZERO, round_money
)
from ..status import status

PairKey = Tuple[str, str]


def _add_debt(ledger: Dict[PairKey, decimal.Decimal], debtor: str, creditor: str, amount: decimal.Decimal) -> None:
    if debtor == creditor:
        return
    if debtor < creditor:
        key, signed = (debtor, creditor), amount
    else:
        key, signed = (creditor, debtor), -amount
    ledger[key] = ledger.get(key, ZERO) + signed


def calculate_debts(
        expenses: Iterable[Expense],
        splits: Iterable[ExpenseSplit],
        settlements: Optional[Iterable[Settlement]] = None
) -> List[Debt]:
    """Compute who owes whom.

    Every split owed by someone other than the payer is a debt towards the payer. Only confirmed
    settlements are applied; pending and cancelled ones are ignored.

    Args:
        expenses: Expenses of a group.
        splits: Splits of those expenses.
        settlements: Optional settlements of the group.

    Returns:
        List[Debt]: One debt per pair with a balance of at least one cent, sorted by (debtor, creditor).

    Raises:
        status.LedgerInputException: If a split or confirmed settlement amount is negative, or a split
            references an expense that is not in ``expenses``.
    """
    payers: Dict[str, str] = {e.id: e.paid_by for e in expenses}
    ledger: Dict[PairKey, decimal.Decimal] = {}

    for split in splits:
        if split.expense_id not in payers:
            raise status.LedgerInputException(
                f'Split "{split.id}" references unknown expense "{split.expense_id}".'
            )
        if split.amount < ZERO:
            raise status.LedgerInputException(f'Split "{split.id}" has a negative amount.')
        _add_debt(ledger, split.user_id, payers[split.expense_id], split.amount)

    for settlement in settlements or []:
        if settlement.status != SettlementStatus.Confirmed:
            continue
        if settlement.amount < ZERO:
            raise status.LedgerInputException(f'Settlement "{settlement.id}" has a negative amount.')
        # paying someone back is the same as them owing you
        _add_debt(ledger, settlement.paid_to, settlement.paid_by, settlement.amount)

    debts: List[Debt] = []
    for (a, b), balance in ledger.items():
        if abs(balance) < EPSILON:
            continue
        if balance > 0:
            debts.append(Debt(debtor_id=a, creditor_id=b, amount=round_money(balance)))
        else:
            debts.append(Debt(debtor_id=b, creditor_id=a, amount=round_money(-balance)))

    debts.sort(key=lambda d: (d.debtor_id, d.creditor_id))
    logging.debug(f'Calculated {len(debts)} debt(s) from {len(payers)} expense(s).')
    return debts


def net_balances(debts: Iterable[Debt]) -> Dict[str, decimal.Decimal]:
    """Return each user's net position: positive when owed money, negative when owing."""
    balances: Dict[str, decimal.Decimal] = {}
    for debt in debts:
        balances[debt.creditor_id] = balances.get(debt.creditor_id, ZERO) + debt.amount
        balances[debt.debtor_id] = balances.get(debt.debtor_id, ZERO) - debt.amount
    return balances


def balances_for_user(debts: Iterable[Debt], user_id: str) -> Tuple[List[Debt], List[Debt]]:
    """Split ``debts`` into what ``user_id`` owes and what is owed to them.

    Returns:
        Tuple[List[Debt], List[Debt]]: (owes, owed)
    """
    owes: List[Debt] = []
    owed: List[Debt] = []
    for debt in debts:
        if debt.debtor_id == user_id:
            owes.append(debt)
        elif debt.creditor_id == user_id:
            owed.append(debt)
    return owes, owed
