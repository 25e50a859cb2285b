"""Status definitions and exceptions for CostSharing.

This module provides:
    - Status: enumeration of possible engine states and failure reasons
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions grouped by validation, remote store, auth and state failures
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Settings status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Authentication status
    ClientSecretNotFound = enum.auto()
    ClientSecretInvalid = enum.auto()
    CredsNotFound = enum.auto()
    CredsInvalid = enum.auto()
    NotAuthenticated = enum.auto()

    # Validation status
    ValidationFailed = enum.auto()
    InvalidAmount = enum.auto()
    InvalidPercentageSum = enum.auto()
    InvalidSplit = enum.auto()
    LedgerInputInvalid = enum.auto()

    # Remote snapshot store status
    RemoteNotFound = enum.auto()
    RemoteForbidden = enum.auto()
    RemoteTransient = enum.auto()
    ServiceUnavailable = enum.auto()
    SnapshotInvalid = enum.auto()

    # Local state
    GroupNotFound = enum.auto()
    EntityNotFound = enum.auto()
    IllegalTransition = enum.auto()
    CacheInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the settings file.',
    Status.SettingsInvalid: 'The settings file seems to be incomplete, or contains invalid values.',

    Status.ClientSecretNotFound: 'Could not find the google client secret. Have you set up a valid Google client secret?',
    Status.ClientSecretInvalid: 'Could not verify the client secret. Have you set up a valid Google client secret?',
    Status.CredsNotFound: 'Could not find the credentials. Please sign in to your Google account.',
    Status.CredsInvalid: 'Could not verify the credentials. Please sign in again to your Google account.',
    Status.NotAuthenticated: 'Authentication error. Try signing in again to your Google account.',

    Status.ValidationFailed: 'The request contains missing or invalid values.',
    Status.InvalidAmount: 'The amount must be a finite, non-negative number.',
    Status.InvalidPercentageSum: 'Split percentages must add up to 100%.',
    Status.InvalidSplit: 'The expense splits do not add up to the expense total.',
    Status.LedgerInputInvalid: 'The ledger contains records that cannot be balanced.',

    Status.RemoteNotFound: 'The group file could not be found on Google Drive.',
    Status.RemoteForbidden: 'Access to the group file on Google Drive was denied.',
    Status.RemoteTransient: 'Google Drive is temporarily unreachable. Sync will be retried.',
    Status.ServiceUnavailable: 'Google Drive service is unavailable. Please check your connection.',
    Status.SnapshotInvalid: 'The group file on Google Drive could not be read.',

    Status.GroupNotFound: 'The group does not exist on this device.',
    Status.EntityNotFound: 'The requested record does not exist.',
    Status.IllegalTransition: 'The requested sync state change is not allowed.',
    Status.CacheInvalid: 'The local database is invalid. Try resetting it.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in CostSharing.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        self.detail = message
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..actions import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class SettingsNotFoundException(BaseStatusException):
    """Exception raised when the settings file cannot be found."""
    status = Status.SettingsNotFound


class SettingsInvalidException(BaseStatusException):
    """Exception raised when the settings file is invalid or malformed."""
    status = Status.SettingsInvalid


class ClientSecretNotFoundException(BaseStatusException):
    """Exception raised when the Google OAuth client secret file cannot be found."""
    status = Status.ClientSecretNotFound


class ClientSecretInvalidException(BaseStatusException):
    """Exception raised when the Google OAuth client secret is invalid or malformed."""
    status = Status.ClientSecretInvalid


class CredsNotFoundException(BaseStatusException):
    """Exception raised when stored Google credentials cannot be found."""
    status = Status.CredsNotFound


class CredsInvalidException(BaseStatusException):
    """Exception raised when stored Google credentials are invalid or expired."""
    status = Status.CredsInvalid


class AuthenticationException(BaseStatusException):
    """Exception raised when user is not authenticated with Google services."""
    status = Status.NotAuthenticated


class ValidationException(BaseStatusException):
    """Exception raised when a required field is empty or malformed."""
    status = Status.ValidationFailed


class InvalidAmountException(ValidationException):
    """Exception raised when a money amount is negative or not a finite number."""
    status = Status.InvalidAmount


class InvalidPercentageSumException(ValidationException):
    """Exception raised when custom split percentages do not sum to 100."""
    status = Status.InvalidPercentageSum


class InvalidSplitException(ValidationException):
    """Exception raised when split amounts do not reconstruct the expense total."""
    status = Status.InvalidSplit


class LedgerInputException(ValidationException):
    """Exception raised when ledger input cannot produce exact money amounts."""
    status = Status.LedgerInputInvalid


class RemoteStoreException(BaseStatusException):
    """Base class of remote snapshot store failures."""
    status = Status.ServiceUnavailable


class RemoteNotFoundException(RemoteStoreException):
    """Exception raised when the remote group file does not exist."""
    status = Status.RemoteNotFound


class RemoteForbiddenException(RemoteStoreException):
    """Exception raised when the remote group file cannot be accessed."""
    status = Status.RemoteForbidden


class RemoteTransientException(RemoteStoreException):
    """Exception raised on timeouts, rate limits and server errors."""
    status = Status.RemoteTransient


class ServiceUnavailableException(RemoteStoreException):
    """Exception raised when the Google Drive service cannot be built."""
    status = Status.ServiceUnavailable


class SnapshotInvalidException(RemoteStoreException):
    """Exception raised when a downloaded snapshot is not valid JSON."""
    status = Status.SnapshotInvalid


class GroupNotFoundException(BaseStatusException):
    """Exception raised when a group is not present in the local store."""
    status = Status.GroupNotFound


class EntityNotFoundException(BaseStatusException):
    """Exception raised when an expense, settlement or member is not found locally."""
    status = Status.EntityNotFound


class IllegalTransitionException(BaseStatusException):
    """Exception raised when a sync status change is not in the transition table."""
    status = Status.IllegalTransition


class CacheInvalidException(BaseStatusException):
    """Exception raised when the local database is invalid or corrupted."""
    status = Status.CacheInvalid
