"""Greedy debt simplification.

Reduces a list of pairwise debts to a shorter list of payments that leaves everyone with the same net
position. At every step the user owed the most is paid by the user owing the most. Ties are broken by
user id so that the output is deterministic.
"""
import decimal
import logging
from typing import Dict, Iterable, List

from . import ledger
from .models import Debt, SimplifiedTransaction, SimplificationSummary, EPSILON, ZERO, round_money


def calculate_net_balances(debts: Iterable[Debt]) -> Dict[str, decimal.Decimal]:
    """Return the net balance of every user appearing in ``debts``.

    Creditors have positive balances, debtors negative ones.
    """
    return ledger.net_balances(debts)


def greedy_matching(balances: Dict[str, decimal.Decimal]) -> List[SimplifiedTransaction]:
    """Match the largest creditor with the largest debtor until every balance is settled.

    Args:
        balances: Net balance per user. The dict is not modified.

    Returns:
        List[SimplifiedTransaction]: Payments in the order they were matched.
    """
    active: Dict[str, decimal.Decimal] = {k: v for k, v in balances.items() if abs(v) >= EPSILON}
    transactions: List[SimplifiedTransaction] = []

    while active:
        creditor = min(active, key=lambda k: (-active[k], k))
        if active[creditor] <= 0:
            break
        debtor = min(active, key=lambda k: (active[k], k))
        if active[debtor] >= 0:
            break

        amount = round_money(min(active[creditor], abs(active[debtor])))
        if amount < EPSILON:
            break

        transactions.append(SimplifiedTransaction(from_user_id=debtor, to_user_id=creditor, amount=amount))

        active[creditor] -= amount
        active[debtor] += amount
        active = {k: v for k, v in active.items() if abs(v) >= EPSILON}

    return transactions


def simplify_debts(debts: List[Debt]) -> List[SimplifiedTransaction]:
    """Return the simplified payments that settle ``debts``."""
    if not debts:
        return []
    transactions = greedy_matching(calculate_net_balances(debts))
    logging.debug(f'Simplified {len(debts)} debt(s) to {len(transactions)} payment(s).')
    return transactions


def get_simplification_summary(
        original_debts: List[Debt],
        simplified: List[SimplifiedTransaction]
) -> SimplificationSummary:
    """Summarise how many payments simplification saved."""
    return SimplificationSummary(
        original_count=len(original_debts),
        simplified_count=len(simplified),
        transactions_saved=len(original_debts) - len(simplified),
        total_amount=sum((t.amount for t in simplified), ZERO),
    )
