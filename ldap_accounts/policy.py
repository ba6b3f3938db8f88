"""
Password strength checks against the configured policy.
"""

import logging
from typing import Optional

from ldap_accounts.config import PasswordPolicy

logger = logging.getLogger(__name__)


def effective_min_length(policy: PasswordPolicy) -> int:
    """Configured minimum length, raised to the sum of the class minimums."""
    class_total = policy.min_upper + policy.min_lower + policy.min_digit + policy.min_nonalnum
    return max(policy.min_length, class_total)


def policy_violations(password: Optional[str], policy: PasswordPolicy) -> list:
    """
    Evaluate every policy dimension independently.

    Returns:
        Messages for each failing dimension, in a fixed order; empty when the
        password satisfies the policy
    """
    if password is None:
        return ["no password given"]

    counts = {
        'uppercase letters': sum(1 for c in password if c.isupper()),
        'lowercase letters': sum(1 for c in password if c.islower()),
        'digits': sum(1 for c in password if c.isdigit()),
        'non-alphanumeric characters': sum(1 for c in password if not c.isalnum()),
    }
    minimums = {
        'uppercase letters': policy.min_upper,
        'lowercase letters': policy.min_lower,
        'digits': policy.min_digit,
        'non-alphanumeric characters': policy.min_nonalnum,
    }

    violations = []
    min_length = effective_min_length(policy)
    if min_length and len(password) < min_length:
        violations.append(f"must be at least {min_length} characters long")
    for label, minimum in minimums.items():
        if minimum and counts[label] < minimum:
            violations.append(f"must contain at least {minimum} {label}")
    return violations


def policy_violation(password: Optional[str], policy: PasswordPolicy) -> Optional[str]:
    """The first failing dimension, or None if the password is strong."""
    violations = policy_violations(password, policy)
    return violations[0] if violations else None


def is_strong(password: Optional[str], policy: PasswordPolicy) -> bool:
    """
    Check a candidate password against the policy.

    Args:
        password: Candidate password; None always fails
        policy: Minimums for length and each character class, zero disables

    Returns:
        True only if every configured dimension is satisfied
    """
    violation = policy_violation(password, policy)
    if violation:
        logger.info(f"Password rejected by policy: {violation}")
        return False
    return True
