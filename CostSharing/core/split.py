"""Expense split calculation.

Turns an expense total into per-participant :class:`~CostSharing.core.models.ExpenseSplit` records whose
amounts add up to the total to the cent. Rounding is always half away from zero; whatever the rounding
leaves over is pushed onto a single participant.
"""
import decimal
import logging
from typing import Any, Dict, List, Sequence

from .models import ExpenseSplit, Expense, new_id, to_money, round_money, EPSILON, ZERO
from ..status import status

HUNDRED = decimal.Decimal('100')


def _validate_total(total: Any) -> decimal.Decimal:
    amount = to_money(total)
    if amount < ZERO:
        raise status.InvalidAmountException(f'Expense total cannot be negative, got {amount}.')
    return amount


def even_split(total: Any, participant_ids: Sequence[str]) -> List[ExpenseSplit]:
    """Split ``total`` evenly between participants.

    Each participant gets the total divided by the head count, rounded to cents. The rounding
    difference is added to the first participant.

    Args:
        total: The expense total.
        participant_ids: Participant user ids, in the order given by the caller.

    Returns:
        List[ExpenseSplit]: One split per participant, not yet bound to an expense.

    Raises:
        status.InvalidAmountException: If the total is negative or not a finite number.
    """
    if not participant_ids:
        return []

    amount = _validate_total(total)
    count = len(participant_ids)
    share = round_money(amount / count)
    difference = amount - share * count
    percentage = round_money(HUNDRED / count)

    splits: List[ExpenseSplit] = []
    for idx, user_id in enumerate(participant_ids):
        value = share + difference if idx == 0 else share
        splits.append(
            ExpenseSplit(id=new_id(), expense_id='', user_id=user_id, amount=value, percentage=percentage)
        )

    logging.debug(f'Even split of {amount} between {count} participant(s), remainder {difference}.')
    return splits


def custom_split(total: Any, percentages: Dict[str, Any]) -> List[ExpenseSplit]:
    """Split ``total`` by percentage.

    Participants are processed from the largest percentage down (ties ordered by user id). Every
    participant gets their rounded share except the last one, who gets whatever is left so that the
    splits sum to the total exactly. Participants with a zero or negative percentage get no split.

    Args:
        total: The expense total.
        percentages: Mapping of user id to percentage (0-100).

    Returns:
        List[ExpenseSplit]: Splits in processing order.

    Raises:
        status.InvalidAmountException: If the total or a percentage is not a finite number.
        status.InvalidPercentageSumException: If the percentages do not add up to 100 (+/- 0.01).
    """
    if not percentages:
        return []

    amount = _validate_total(total)

    parsed: Dict[str, decimal.Decimal] = {}
    for user_id, pct in percentages.items():
        try:
            parsed[user_id] = decimal.Decimal(str(pct))
        except decimal.InvalidOperation as ex:
            raise status.InvalidAmountException(f'Percentage "{pct}" is not a number.') from ex
        if not parsed[user_id].is_finite():
            raise status.InvalidAmountException(f'Percentage "{pct}" is not a finite number.')

    pct_sum = sum(parsed.values(), decimal.Decimal(0))
    if abs(pct_sum - HUNDRED) > EPSILON:
        raise status.InvalidPercentageSumException(f'Got {pct_sum}%.')

    ordered = sorted(
        ((user_id, pct) for user_id, pct in parsed.items() if pct > 0),
        key=lambda item: (-item[1], item[0])
    )

    splits: List[ExpenseSplit] = []
    assigned = ZERO
    for idx, (user_id, pct) in enumerate(ordered):
        if idx == len(ordered) - 1:
            value = amount - assigned
        else:
            value = round_money(amount * pct / HUNDRED)
            assigned += value
        splits.append(
            ExpenseSplit(id=new_id(), expense_id='', user_id=user_id, amount=value, percentage=pct)
        )

    return splits


def splits_for_expense(expense: Expense, splits: List[ExpenseSplit]) -> List[ExpenseSplit]:
    """Bind calculated splits to ``expense``."""
    return [s.copy(expense_id=expense.id) for s in splits]


def validate_splits(total: Any, splits: List[ExpenseSplit]) -> None:
    """Check that ``splits`` reconstruct ``total``.

    Raises:
        status.InvalidSplitException: If the split amounts are off by more than a cent, or negative.
    """
    amount = to_money(total)
    if any(s.amount < ZERO for s in splits):
        raise status.InvalidSplitException('Split amounts cannot be negative.')
    split_sum = sum((s.amount for s in splits), ZERO)
    if abs(split_sum - amount) > EPSILON:
        raise status.InvalidSplitException(f'Splits add up to {split_sum}, expected {amount}.')
