"""
CostSharing data package: balance and history queries.

This package provides:

- :mod:`CostSharing.data.data` – pandas views of debts, settlement plans, member summaries and transaction history.
"""
