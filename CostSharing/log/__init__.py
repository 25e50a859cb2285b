"""
Logging subsystem.

Modules:

- :mod:`CostSharing.log.log` – Root logger setup, the in-memory log tank and the Qt message bridge.
"""
