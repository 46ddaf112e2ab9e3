"""
auth/passwords.py -- scrypt password hashing with a self-describing format.

Stored format:
    $scrypt$<N>$<r>$<p>$<saltHex>$<hashHex>

The cost parameters travel with every hash, so the constants below can be
raised later without breaking verification of older hashes. needs_rehash()
tells the credential store when a stored value should be upgraded.

The hex salt string itself is the scrypt salt input. Hashes written by earlier
deployments used the same convention and verify unchanged.

Legacy values: a stored value without the $scrypt$ prefix is a plaintext
password from before hashing was introduced. verify_password() compares it
directly (constant time) and UserStore.verify_user() rewrites it as a scrypt
hash after the first successful login.

Fail closed: any malformed hash (wrong field count, unknown algorithm tag,
non-numeric parameters, bad hex, parameters scrypt rejects) makes
verify_password() return False. Nothing about which field was wrong reaches
the caller.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets

logger = logging.getLogger("tvcore.auth.passwords")

SCRYPT_TAG = "scrypt"
SCRYPT_PREFIX = f"${SCRYPT_TAG}$"
SCRYPT_COST = 16384  # N: CPU/memory cost
SCRYPT_BLOCK_SIZE = 8  # r
SCRYPT_PARALLELIZATION = 1  # p
SCRYPT_KEYLEN = 64
SALT_BYTES = 16

# Upper bound for scrypt memory (128 * r * N bytes) when verifying stored
# hashes, so a tampered row cannot make a login allocate gigabytes.
_MAX_MEMORY = 64 * 1024 * 1024


def _derive(password: str, salt: str, n: int, r: int, p: int) -> bytes:
    return hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt.encode("utf-8"),
        n=n,
        r=r,
        p=p,
        dklen=SCRYPT_KEYLEN,
        maxmem=_MAX_MEMORY,
    )


def hash_password(plain: str) -> str:
    """Return the scrypt hash string for a plaintext password (fresh random salt)."""
    salt = secrets.token_hex(SALT_BYTES)
    derived = _derive(plain, salt, SCRYPT_COST, SCRYPT_BLOCK_SIZE, SCRYPT_PARALLELIZATION)
    return f"{SCRYPT_PREFIX}{SCRYPT_COST}${SCRYPT_BLOCK_SIZE}${SCRYPT_PARALLELIZATION}${salt}${derived.hex()}"


def is_hashed_password(value: str) -> bool:
    return value.startswith(SCRYPT_PREFIX)


def verify_password(plain: str, stored: str) -> bool:
    """Return True if `plain` matches the stored hash (or legacy plaintext)."""
    if not stored:
        return False
    if not is_hashed_password(stored):
        try:
            return hmac.compare_digest(plain.encode("utf-8"), stored.encode("utf-8"))
        except UnicodeEncodeError:
            return False

    parts = stored.split("$")
    if len(parts) != 7 or parts[1] != SCRYPT_TAG:
        logger.debug("Rejected malformed password hash")
        return False
    _, _, cost, block_size, parallelization, salt, expected_hex = parts
    try:
        expected = bytes.fromhex(expected_hex)
        derived = _derive(plain, salt, int(cost), int(block_size), int(parallelization))
    except (ValueError, OverflowError, MemoryError):
        logger.debug("Rejected malformed password hash")
        return False
    return hmac.compare_digest(derived, expected)


def needs_rehash(stored: str) -> bool:
    """True for legacy plaintext values and hashes made with other cost parameters."""
    if not is_hashed_password(stored):
        return True
    parts = stored.split("$")
    if len(parts) != 7:
        return True
    return parts[2:5] != [str(SCRYPT_COST), str(SCRYPT_BLOCK_SIZE), str(SCRYPT_PARALLELIZATION)]
