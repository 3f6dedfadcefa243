"""
auth/hashing.py -- Credential Hasher: per-application password hashing strategy.

The strategy set is closed and small (BCRYPT, ARGON2, PBKDF2), so it is a
single enum dispatched by one function rather than a class hierarchy.

  BCRYPT: bcrypt directly (no passlib wrapper). Cost factor from
      Settings.bcrypt_rounds; salt embedded in the digest. bcrypt rejects
      inputs longer than 72 bytes -- password policy caps length below that.

  ARGON2: argon2-cffi PasswordHasher, argon2id. Memory cost, iterations and
      parallelism come from Settings and are fixed per deployment.

  PBKDF2: hashlib.pbkdf2_hmac with SHA-256. Digest format
      pbkdf2_sha256$<iterations>$<salt b64>$<hash b64> so the iteration count
      travels with the digest and can be raised later without breaking
      existing records.

verify_secret() never raises on a mismatch or a malformed digest. A digest
produced by a different algorithm simply fails to verify -- that is how an
application's algorithm switch locks out existing passwords until reset.

Layer rule: no imports from api/ or tenants/ except the HashAlgorithm enum.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from functools import lru_cache

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from core.config import get_settings
from core.errors import ValidationError
from tenants.models import HashAlgorithm

logger = logging.getLogger("tokenly.auth.hashing")

_settings = get_settings()

_PBKDF2_PREFIX = "pbkdf2_sha256"

_argon2 = PasswordHasher(
    time_cost=_settings.argon2_time_cost,
    memory_cost=_settings.argon2_memory_cost,
    parallelism=_settings.argon2_parallelism,
    type=Type.ID,
)


def hash_secret(plain: str, algorithm: HashAlgorithm) -> str:
    """Return a digest of plain produced by the given algorithm."""
    if algorithm is HashAlgorithm.BCRYPT:
        salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
        return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")
    if algorithm is HashAlgorithm.ARGON2:
        return _argon2.hash(plain)
    if algorithm is HashAlgorithm.PBKDF2:
        return _pbkdf2_hash(plain, _settings.pbkdf2_iterations, secrets.token_bytes(_settings.pbkdf2_salt_bytes))
    raise ValueError(f"Unsupported hash algorithm: {algorithm!r}")


def verify_secret(plain: str, digest: str | None, algorithm: HashAlgorithm) -> bool:
    """Return True only if digest was produced from plain by algorithm."""
    if not digest:
        return False
    stored = detect_algorithm(digest)
    if stored is not None and stored is not algorithm:
        logger.info("Digest was produced by %s but %s is configured; verification fails.", stored.value, algorithm.value)
        return False
    if algorithm is HashAlgorithm.BCRYPT:
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), digest.encode("utf-8"))
        except ValueError:
            return False
    if algorithm is HashAlgorithm.ARGON2:
        try:
            return _argon2.verify(digest, plain)
        except (VerificationError, InvalidHashError):
            return False
    if algorithm is HashAlgorithm.PBKDF2:
        return _pbkdf2_verify(plain, digest)
    return False


def detect_algorithm(digest: str | None) -> HashAlgorithm | None:
    """Best-effort identification of the algorithm behind a stored digest.

    Used for diagnostics only (admin views, log lines). Authentication always
    verifies against the application's configured algorithm.
    """
    if not digest:
        return None
    if digest.startswith(("$2a$", "$2b$", "$2y$")):
        return HashAlgorithm.BCRYPT
    if digest.startswith("$argon2"):
        return HashAlgorithm.ARGON2
    if digest.startswith(_PBKDF2_PREFIX + "$"):
        return HashAlgorithm.PBKDF2
    return None


# Timing equalization: when the email is unknown, verify against a dummy
# digest of the same algorithm so response time matches a wrong password.
@lru_cache(maxsize=None)
def dummy_digest(algorithm: HashAlgorithm) -> str:
    return hash_secret("tokenly_timing_dummy", algorithm)


# ---------------------------------------------------------------------------
# PBKDF2 helpers
# ---------------------------------------------------------------------------


def _pbkdf2_hash(plain: str, iterations: int, salt: bytes) -> str:
    derived = hashlib.pbkdf2_hmac("sha256", plain.encode("utf-8"), salt, iterations)
    return "$".join(
        (
            _PBKDF2_PREFIX,
            str(iterations),
            base64.b64encode(salt).decode("ascii"),
            base64.b64encode(derived).decode("ascii"),
        )
    )


def _pbkdf2_verify(plain: str, digest: str) -> bool:
    parts = digest.split("$")
    if len(parts) != 4 or parts[0] != _PBKDF2_PREFIX:
        return False
    try:
        iterations = int(parts[1])
        salt = base64.b64decode(parts[2], validate=True)
        expected = base64.b64decode(parts[3], validate=True)
    except ValueError:
        return False
    if iterations <= 0:
        return False
    derived = hashlib.pbkdf2_hmac("sha256", plain.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(derived, expected)


# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------

# bcrypt silently ignores everything past 72 bytes; longer passwords are refused
# for every algorithm so a switch of algorithm never changes what is accepted.
MAX_PASSWORD_BYTES = 72


def check_password_policy(password: str) -> None:
    """Raise ValidationError(weak_password) unless password meets the policy.

    Minimum length from Settings.password_min_length, at most 72 UTF-8 bytes,
    at least one letter and one digit.
    """
    if len(password) < _settings.password_min_length:
        raise ValidationError(
            f"Password must be at least {_settings.password_min_length} characters.", code="weak_password"
        )
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.", code="weak_password")
    if not any(c.isalpha() for c in password) or not any(c.isdigit() for c in password):
        raise ValidationError("Password must contain at least one letter and one digit.", code="weak_password")
