#!/usr/bin/env python3
"""
Unit tests for credential hashing.
"""

import os
import sys
import unittest
from unittest.mock import patch

from passlib.hash import lmhash, nthash

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_accounts.errors import HashingError
from ldap_accounts.hashing import (CRYPT_PREFIX, SALT_SIZE, Credentials, generate_salt, hash_password,
                                   verify_unix_hash)


class TestHashPassword(unittest.TestCase):
    """Test cases for hash_password."""

    def test_unix_hash_is_salted_sha512_crypt(self):
        credentials = hash_password("Secret123")
        self.assertIsInstance(credentials, Credentials)
        self.assertTrue(credentials.unix_hash.startswith("$6$"))
        salt = credentials.unix_hash.split("$")[2]
        self.assertEqual(len(salt), SALT_SIZE)

    def test_same_password_twice_gives_distinct_hashes_that_both_verify(self):
        first = hash_password("Secret123")
        second = hash_password("Secret123")
        self.assertNotEqual(first.unix_hash, second.unix_hash)
        self.assertTrue(verify_unix_hash("Secret123", first.unix_hash))
        self.assertTrue(verify_unix_hash("Secret123", second.unix_hash))
        self.assertFalse(verify_unix_hash("secret123", first.unix_hash))

    def test_nt_and_lm_hashes_match_known_values(self):
        credentials = hash_password("password")
        self.assertEqual(credentials.nt_hash, "8846F7EAEE8FB117AD06BDD830B7586C")
        self.assertEqual(credentials.lm_hash, "E52CAC67419A9A224A3B108F3FA6CB6D")

    def test_password_outside_the_oem_code_page_still_hashes(self):
        credentials = hash_password("Pri€ing99")
        self.assertEqual(credentials.nt_hash, nthash.hash("Pri€ing99").upper())
        self.assertEqual(credentials.lm_hash, lmhash.hash("Pri€ing99", encoding='utf-8').upper())
        self.assertEqual(len(credentials.lm_hash), 32)

    def test_user_password_carries_crypt_prefix(self):
        credentials = hash_password("Secret123")
        self.assertEqual(credentials.user_password, CRYPT_PREFIX + credentials.unix_hash)
        self.assertTrue(verify_unix_hash("Secret123", credentials.user_password))

    def test_round_trip_mismatch_fails_cleanly(self):
        produced = "$6$abcdefghijklmnop$" + "A" * 86
        with patch('ldap_accounts.hashing._crypt', side_effect=[produced, produced.replace("A", "B")]):
            with self.assertRaises(HashingError):
                hash_password("Secret123")

    def test_backend_error_is_wrapped(self):
        with patch('ldap_accounts.hashing._crypt', side_effect=ValueError("backend unavailable")):
            with self.assertRaises(HashingError) as ctx:
                hash_password("Secret123")
        self.assertIn("backend unavailable", str(ctx.exception))

    def test_undefined_password_is_rejected(self):
        with self.assertRaises(HashingError):
            hash_password(None)

    def test_garbage_hash_does_not_verify(self):
        self.assertFalse(verify_unix_hash("Secret123", "not-a-hash"))


class TestGenerateSalt(unittest.TestCase):

    def test_salts_use_crypt_alphabet_and_differ(self):
        salts = {generate_salt() for _ in range(20)}
        self.assertEqual(len(salts), 20)
        for salt in salts:
            self.assertEqual(len(salt), SALT_SIZE)
            self.assertTrue(all(c.isalnum() or c in "./" for c in salt))


if __name__ == '__main__':
    unittest.main()
