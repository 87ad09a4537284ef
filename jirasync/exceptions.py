"""Errors raised by the synchronization engine"""


class SyncError(Exception):
    """Base class for all synchronization errors."""


class ConfigurationError(SyncError):
    """Invalid or incomplete configuration; nothing should be synchronized."""


class ConnectivityError(SyncError):
    """A remote system could not be reached; fatal for the current project only."""


class SourceFetchError(ConnectivityError):
    """A page of source records could not be retrieved."""


class MissingTransitionError(SyncError):
    """No Jira workflow transition leads to the wanted status."""

    def __init__(self, issue_key: str, status: str):
        super().__init__(f'Transition to status "{status}" not found for issue {issue_key}')
        self.issue_key = issue_key
        self.status = status


class SyncInProgressError(SyncError):
    """A synchronization pass is already running in this process."""
