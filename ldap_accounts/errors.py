"""
Exception hierarchy for LDAP Account Tools.

Every failure class carries the process exit code the command line reports
for it, so the mapping from failure to exit status lives in one place.
"""

from typing import Optional


class AccountError(Exception):
    """Base exception for all account management failures."""
    exit_code = 1


class ConfigurationError(AccountError):
    """Raised when configuration is invalid or missing required fields."""
    exit_code = 2


class DirectoryError(AccountError):
    """Raised when the directory rejects an operation or cannot be reached."""
    exit_code = 3

    def __init__(self, message: str, result_code: Optional[int] = None):
        super().__init__(message)
        self.result_code = result_code


class PrivilegeError(DirectoryError):
    """Raised when the bind identity lacks the rights for an operation."""
    exit_code = 4


class NotFoundError(AccountError):
    """Raised when the target record does not exist."""
    exit_code = 5


class DuplicateError(AccountError):
    """Raised when a name or numeric ID is already taken."""
    exit_code = 6


class ValidationError(AccountError):
    """Raised when input is rejected before any directory write."""
    exit_code = 7


class AllocationError(AccountError):
    """Raised when no free numeric ID is found within the attempt limit."""
    exit_code = 8

    def __init__(self, attempts: int, floor: int):
        self.attempts = attempts
        self.floor = floor
        super().__init__(f"No free ID at or above {floor} after {attempts} attempts")


class HashingError(AccountError):
    """Raised when the password hashing backend produces inconsistent output."""
    exit_code = 9
