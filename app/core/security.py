"""Password hashing, verification, strength scoring and random password generation."""

import base64
import binascii
import hashlib
import hmac
import logging
import re
import secrets
from collections.abc import Callable
from random import Random

from app.core.config import MIN_PASSWORD_HASH_ITERATIONS

logger = logging.getLogger(__name__)

# Salt and derived key sizes in bytes (256 bits each).
SALT_SIZE = 32
HASH_SIZE = 32
HASH_ALGORITHM = "sha256"

# Min/max lengths for username and password validation at the HTTP boundary.
USERNAME_MIN_LEN = 3
USERNAME_MAX_LEN = 50
PASSWORD_MIN_LEN = 6
PASSWORD_MAX_LEN = 128
STRONG_PASSWORD_MIN_LEN = 8
RANDOM_PASSWORD_MIN_LEN = 8

LOWERCASE = "abcdefghijklmnopqrstuvwxyz"
UPPERCASE = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
DIGITS = "0123456789"
# Symbols used when generating passwords (a subset of the accepted set below).
GENERATED_SYMBOLS = "!@#$%^&*"

_SYMBOL_PATTERN = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")

# Substrings that make a password weak regardless of character classes (checked case-insensitively).
WEAK_PATTERNS = ("123456", "password", "admin", "qwerty", "abc123")


class InvalidInputError(ValueError):
    """Raised when hashing or generation is asked to work on unusable input."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class CredentialHasher:
    """
    Salted PBKDF2-HMAC-SHA256 password hashing.

    Hash and salt are stored separately, both base64-encoded. The random sources are
    injectable so tests can pin them; production uses the OS CSPRNG.
    """

    def __init__(
        self,
        iterations: int = MIN_PASSWORD_HASH_ITERATIONS,
        token_bytes: Callable[[int], bytes] = secrets.token_bytes,
        rng: Random | None = None,
    ) -> None:
        if iterations < MIN_PASSWORD_HASH_ITERATIONS:
            raise InvalidInputError(
                f"iterations must be at least {MIN_PASSWORD_HASH_ITERATIONS}"
            )
        self.iterations = iterations
        self._token_bytes = token_bytes
        self._rng = rng if rng is not None else secrets.SystemRandom()

    def _derive(self, password: str, salt: bytes) -> bytes:
        return hashlib.pbkdf2_hmac(
            HASH_ALGORITHM,
            password.encode("utf-8"),
            salt,
            self.iterations,
            dklen=HASH_SIZE,
        )

    def hash(self, password: str) -> tuple[str, str]:
        """Hash a plain-text password. Returns (hash, salt), both base64."""
        if not password:
            raise InvalidInputError("Password cannot be empty")
        salt = self._token_bytes(SALT_SIZE)
        derived = self._derive(password, salt)
        return (
            base64.b64encode(derived).decode("ascii"),
            base64.b64encode(salt).decode("ascii"),
        )

    def verify(self, password: str, password_hash: str, salt: str) -> bool:
        """
        Verify a plain password against a stored hash and salt.

        Never raises: malformed stored values verify as False, exactly like a wrong password.
        """
        if not password or not password_hash or not salt:
            return False
        try:
            salt_bytes = base64.b64decode(salt, validate=True)
            expected = base64.b64decode(password_hash, validate=True)
            computed = self._derive(password, salt_bytes)
            return hmac.compare_digest(computed, expected)
        except (binascii.Error, ValueError, TypeError):
            return False
        except Exception:
            logger.exception("Unexpected error during password verification")
            return False

    def is_strong(self, password: str) -> bool:
        """True if password has length >= 8, lower, upper, digit, symbol and no weak pattern."""
        if not password or len(password) < STRONG_PASSWORD_MIN_LEN:
            return False
        if not re.search(r"[a-z]", password):
            return False
        if not re.search(r"[A-Z]", password):
            return False
        if not re.search(r"\d", password):
            return False
        if not _SYMBOL_PATTERN.search(password):
            return False
        lowered = password.lower()
        return not any(pattern in lowered for pattern in WEAK_PATTERNS)

    def generate_random(self, length: int = 12) -> str:
        """Generate a password with at least one lower, upper, digit and symbol, shuffled."""
        if length < RANDOM_PASSWORD_MIN_LEN:
            raise InvalidInputError(
                f"Password length must be at least {RANDOM_PASSWORD_MIN_LEN} characters"
            )
        chars = [
            self._rng.choice(LOWERCASE),
            self._rng.choice(UPPERCASE),
            self._rng.choice(DIGITS),
            self._rng.choice(GENERATED_SYMBOLS),
        ]
        alphabet = LOWERCASE + UPPERCASE + DIGITS + GENERATED_SYMBOLS
        chars.extend(self._rng.choice(alphabet) for _ in range(length - len(chars)))
        self._rng.shuffle(chars)
        return "".join(chars)
