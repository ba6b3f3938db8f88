"""
Security identifiers for the Samba attribute set.

A SID is held as its numeric segments rather than as text, so keeping the
trailing segment in step with a UID or GID never touches any other segment.
"""

from typing import Optional, Tuple, Union

from ldap_accounts.errors import ValidationError

SID_MARKER = 'S'


class SecurityIdentifier:
    """An 'S-1-5-21-...' identifier as an ordered tuple of integer segments."""

    __slots__ = ('segments',)

    def __init__(self, segments: Tuple[int, ...]):
        if not segments:
            raise ValidationError("A SID needs at least one segment")
        self.segments = tuple(int(s) for s in segments)

    @classmethod
    def parse(cls, text: str) -> 'SecurityIdentifier':
        """
        Parse the string form of a SID.

        Raises:
            ValidationError: If the text is not S-n-n...
        """
        parts = str(text).strip().split('-')
        if len(parts) < 3 or parts[0].upper() != SID_MARKER:
            raise ValidationError(f"Malformed SID: {text!r}")
        if not all(p.isascii() and p.isdigit() for p in parts[1:]):
            raise ValidationError(f"Malformed SID: {text!r}")
        return cls(tuple(int(p) for p in parts[1:]))

    @property
    def relative_id(self) -> int:
        return self.segments[-1]

    def with_relative_id(self, relative_id: int) -> 'SecurityIdentifier':
        return SecurityIdentifier(self.segments[:-1] + (int(relative_id),))

    def extended(self, segment: int) -> 'SecurityIdentifier':
        return SecurityIdentifier(self.segments + (int(segment),))

    def __eq__(self, other):
        if not isinstance(other, SecurityIdentifier):
            return NotImplemented
        return self.segments == other.segments

    def __hash__(self):
        return hash(self.segments)

    def __str__(self):
        return '-'.join([SID_MARKER] + [str(s) for s in self.segments])

    def __repr__(self):
        return f"SecurityIdentifier({str(self)!r})"


SidLike = Union[str, SecurityIdentifier]


def _as_sid(value: SidLike) -> SecurityIdentifier:
    if isinstance(value, SecurityIdentifier):
        return value
    return SecurityIdentifier.parse(value)


def rebuild_trailing_segment(current_sid: Optional[SidLike], old_id: int, new_id: int,
                             explicit_sid: Optional[SidLike] = None) -> Optional[str]:
    """
    Keep a SID's trailing segment in step with a changed numeric ID.

    An explicit SID from the caller always wins and is returned as given.
    Otherwise the trailing segment is replaced by new_id only when it equals
    old_id; any other SID is returned unchanged.

    Returns:
        The SID string to store, or None if there is no SID at all
    """
    if explicit_sid is not None:
        return str(_as_sid(explicit_sid))
    if current_sid is None:
        return None

    sid = _as_sid(current_sid)
    if sid.relative_id != int(old_id):
        return str(sid)
    return str(sid.with_relative_id(new_id))


def extend(group_sid: SidLike, numeric_id: int) -> str:
    """A new record's SID: the group SID with the numeric ID appended."""
    return str(_as_sid(group_sid).extended(numeric_id))
