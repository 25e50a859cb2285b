"""
Settings package: configuration API and application data paths.

This package provides:

- :mod:`CostSharing.settings.lib` – Settings management, schema validation and path resolution.
"""
