"""
Password hashing for the unix and Samba password attributes.

A password always yields three values: a salted SHA-512 crypt hash for
userPassword, and the NT and LM hashes carried by the Samba schema.
"""

import secrets
import logging
from typing import NamedTuple

from passlib.hash import sha512_crypt, nthash, lmhash
from passlib.utils.binary import HASH64_CHARS

from ldap_accounts.errors import HashingError

logger = logging.getLogger(__name__)

SALT_SIZE = 16
# glibc's implicit round count, so hashes read like crypt(3) output
DEFAULT_ROUNDS = 5000
CRYPT_PREFIX = '{CRYPT}'


class Credentials(NamedTuple):
    unix_hash: str
    nt_hash: str
    lm_hash: str

    @property
    def user_password(self) -> str:
        """The unix hash in the form stored in userPassword."""
        return CRYPT_PREFIX + self.unix_hash


def generate_salt(size: int = SALT_SIZE) -> str:
    return ''.join(secrets.choice(HASH64_CHARS) for _ in range(size))


def _crypt(password: str, salt: str, rounds: int) -> str:
    return sha512_crypt.using(salt=salt, rounds=rounds).hash(password)


def lm_hash(password: str) -> str:
    """LM hash in the OEM code page, or over UTF-8 for characters outside it."""
    try:
        return lmhash.hash(password).upper()
    except UnicodeEncodeError:
        # no Windows client can present this value, but the attribute stays populated
        return lmhash.hash(password, encoding='utf-8').upper()


def verify_unix_hash(password: str, unix_hash: str) -> bool:
    """Rehash the password with the salt and rounds taken from unix_hash and compare."""
    if unix_hash.startswith(CRYPT_PREFIX):
        unix_hash = unix_hash[len(CRYPT_PREFIX):]
    try:
        parsed = sha512_crypt.from_string(unix_hash)
    except ValueError:
        return False
    return _crypt(password, parsed.salt, parsed.rounds) == unix_hash


def hash_password(password: str, rounds: int = DEFAULT_ROUNDS) -> Credentials:
    """
    Produce the unix, NT and LM hashes of a password.

    The unix hash is rehashed from its own salt before being returned; a
    backend that cannot reproduce it fails here instead of storing a hash
    nobody can log in with.

    Raises:
        HashingError: If the backend fails or the round trip does not match
    """
    if password is None:
        raise HashingError("Cannot hash an undefined password")

    try:
        unix_hash = _crypt(password, generate_salt(), rounds)
        consistent = verify_unix_hash(password, unix_hash)
        nt = nthash.hash(password).upper()
        lm = lm_hash(password)
    except (ValueError, TypeError, UnicodeError) as e:
        raise HashingError(f"Password hashing failed: {e}")

    if not consistent:
        logger.error("Password hash failed round-trip verification")
        raise HashingError("Password hash did not verify against its own salt")

    return Credentials(unix_hash, nt, lm)
