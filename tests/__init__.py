"""Test package for CostSharing.

Qt's standard paths are switched to test mode before anything resolves the application data
directory, so the tests never touch a real user's settings or database.
"""
from PySide6 import QtCore

QtCore.QStandardPaths.setTestModeEnabled(True)
