"""GitHub to Jira issue synchronization"""

__version__ = "1.0.0"
