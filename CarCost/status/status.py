"""Status definitions and exceptions for CarCost.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., NotAuthenticatedException) raised by the store
      accessors and the sync engine
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Authentication status
    ClientSecretNotFound = enum.auto()
    ClientSecretInvalid = enum.auto()
    CredsInvalid = enum.auto()
    AuthenticationFailed = enum.auto()
    NotAuthenticated = enum.auto()

    # Remote store status
    SpreadsheetIdNotConfigured = enum.auto()
    WorksheetNotFound = enum.auto()
    HeadersInvalid = enum.auto()
    RemoteUnavailable = enum.auto()

    # Local store status
    LocalStoreError = enum.auto()

    # Sync status
    ReconcileFailed = enum.auto()
    SyncInProgress = enum.auto()
    SyncCancelled = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the settings file.',
    Status.SettingsInvalid: 'The settings file seems to be incomplete, or contains invalid values.',

    Status.ClientSecretNotFound: 'Could not find the google client secret. Have you set up a valid Google client secret?',
    Status.ClientSecretInvalid: 'Could not verify the client secret. Have you set up a valid Google client secret?',
    Status.CredsInvalid: 'Could not verify the credentials. Please sign in again.',
    Status.AuthenticationFailed: 'Authentication failed. Please try signing in again.',
    Status.NotAuthenticated: 'User is not authenticated. Please sign in.',

    Status.SpreadsheetIdNotConfigured: 'Could not find a valid spreadsheet id. Have you set up a valid spreadsheet id in the settings?',
    Status.WorksheetNotFound: 'Could not find the worksheet. Have you set up valid worksheet names in the settings?',
    Status.HeadersInvalid: 'The remote worksheet headers do not match the expected columns.',
    Status.RemoteUnavailable: 'The remote store is unavailable. Please check your connection.',

    Status.LocalStoreError: 'The local database could not be read or written.',

    Status.ReconcileFailed: 'Synchronization failed.',
    Status.SyncInProgress: 'A synchronization is already running.',
    Status.SyncCancelled: 'Synchronization was cancelled.',
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
    """Base exception for status-based errors in CarCost.

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

        from ..core.signals import signals
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


class CredsInvalidException(BaseStatusException):
    """Exception raised when stored Google credentials are invalid or expired."""
    status = Status.CredsInvalid


class AuthenticationException(BaseStatusException):
    """Exception raised when the sign-in flow fails or is cancelled."""
    status = Status.AuthenticationFailed


class NotAuthenticatedException(BaseStatusException):
    """Exception raised when no user is signed in."""
    status = Status.NotAuthenticated


class SpreadsheetIdNotConfiguredException(BaseStatusException):
    """Exception raised when the spreadsheet ID is not configured in settings."""
    status = Status.SpreadsheetIdNotConfigured


class WorksheetNotFoundException(BaseStatusException):
    """Exception raised when an entity worksheet cannot be found."""
    status = Status.WorksheetNotFound


class HeadersInvalidException(BaseStatusException):
    """Exception raised when a worksheet header row does not match the entity columns."""
    status = Status.HeadersInvalid


class RemoteUnavailableException(BaseStatusException):
    """Exception raised when a remote call fails (network, permission, validation)."""
    status = Status.RemoteUnavailable


class LocalStoreException(BaseStatusException):
    """Exception raised when the local SQLite store fails."""
    status = Status.LocalStoreError


class ReconcileException(BaseStatusException):
    """Exception raised when an entity type pass cannot proceed."""
    status = Status.ReconcileFailed


class SyncInProgressException(BaseStatusException):
    """Exception raised when a second sync run overlaps the one in flight."""
    status = Status.SyncInProgress


class SyncCancelledException(BaseStatusException):
    """Exception raised when the caller cancels a sync run."""
    status = Status.SyncCancelled
