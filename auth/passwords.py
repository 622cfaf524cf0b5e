"""
auth/passwords.py -- Password hashing, strength policy, and reset tokens.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). bcrypt's cost factor makes
       brute force expensive, and checkpw compares in constant time. The
       cost is configurable (Settings.bcrypt_rounds) so tests can run at 4.

  Strength: a deterministic rule set (length, character classes, common
       patterns) producing {valid, feedback, score}. The Auth Service calls
       it before accepting any new password.

  Reset tokens: secrets.token_hex(32) -- 256 bits of entropy. The store keeps
       only HMAC-SHA256(SECRET_KEY, token) so a database leak does not leak
       usable tokens, and lookup by digest stays O(1) through a UNIQUE index.

  Random passwords: secrets.choice over each required character class, then
       a SystemRandom shuffle, for admin-created accounts without a password.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import string
from dataclasses import dataclass, field

import bcrypt

_SPECIALS = "!@#$%^&*_-+="

_COMMON_PATTERNS = ("password", "123456", "qwerty", "letmein", "welcome", "admin", "abc123", "iloveyou")
_REPEATED_CHAR = re.compile(r"(.)\1{2,}")

MIN_LENGTH = 8
MAX_BYTES = 72  # bcrypt rejects longer input


@dataclass
class StrengthResult:
    valid: bool
    score: int  # 0 (weak) .. 5 (strong)
    feedback: list[str] = field(default_factory=list)


class PasswordHasher:
    """The hash / verify / validate_strength capability consumed by the Auth Service.

    Usage:
        hasher = PasswordHasher(rounds=12)
        stored = hasher.hash("S3cure!pass")
        hasher.verify("S3cure!pass", stored)  # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the given plaintext password.

        Callers validate strength first; validate_strength rejects anything
        bcrypt cannot take (over MAX_BYTES once UTF-8 encoded).
        """
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext matches the hash. Malformed hashes verify as False."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False

    def validate_strength(self, plain: str) -> StrengthResult:
        return validate_strength(plain)


def validate_strength(plain: str) -> StrengthResult:
    """Score a candidate password and explain what is missing.

    One point each for: minimum length, 12+ characters, uppercase,
    lowercase, digit, special character; one point off for a common
    pattern. The password is valid only when no feedback was produced.
    """
    feedback: list[str] = []
    score = 0

    if len(plain) >= MIN_LENGTH:
        score += 1
    else:
        feedback.append(f"Password should be at least {MIN_LENGTH} characters long")
    if len(plain.encode("utf-8")) > MAX_BYTES:
        feedback.append(f"Password must be at most {MAX_BYTES} bytes long")
    if len(plain) >= 12:
        score += 1
    if re.search(r"[A-Z]", plain):
        score += 1
    else:
        feedback.append("Password should contain at least one uppercase letter")
    if re.search(r"[a-z]", plain):
        score += 1
    else:
        feedback.append("Password should contain at least one lowercase letter")
    if re.search(r"[0-9]", plain):
        score += 1
    else:
        feedback.append("Password should contain at least one number")
    if any(ch in _SPECIALS or ch in string.punctuation for ch in plain):
        score += 1
    else:
        feedback.append("Password should contain at least one special character")

    lowered = plain.lower()
    if any(p in lowered for p in _COMMON_PATTERNS) or _REPEATED_CHAR.search(plain):
        score -= 1
        feedback.append("Password contains common patterns")

    score = max(0, min(score, 5))
    return StrengthResult(valid=not feedback, score=score, feedback=feedback)


def generate_random_password(length: int = 12) -> str:
    """Generate a password containing every character class the strength policy asks for."""
    if length < 4:
        raise ValueError("length must be at least 4")
    pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits, _SPECIALS]
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    candidate = "".join(chars)
    # A random draw can occasionally form a run like "aaa"; draw again.
    if _REPEATED_CHAR.search(candidate):
        return generate_random_password(length)
    return candidate


def generate_reset_token() -> str:
    """Return a 64-character hex token (32 random bytes)."""
    return secrets.token_hex(32)


def hash_reset_token(token: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, token) as hex -- the only form the store ever sees."""
    return hmac.new(secret_key.encode(), token.encode(), hashlib.sha256).hexdigest()
