"""
Password hashing for the Axiom Trade login protocol.

The server expects the password as a base64 PBKDF2-HMAC-SHA256 digest
computed with a fixed salt. Because the salt is fixed the output is fully
deterministic: it reproduces the wire password and seeds deterministic key
derivation. It is not a password-storage hash.
"""

import base64
import hashlib

PASSWORD_SALT = bytes(
    [
        217, 3, 161, 123, 53, 200, 206, 36, 143, 2, 220, 252, 240, 109, 204, 23,
        217, 174, 79, 158, 18, 76, 149, 117, 73, 40, 207, 77, 34, 194, 196, 163,
    ]
)
PBKDF2_ITERATIONS = 600_000
HASH_LENGTH = 32


def derive_password_bytes(password: str) -> bytes:
    """Raw 32-byte PBKDF2-HMAC-SHA256 digest of `password` with the fixed salt."""
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        PASSWORD_SALT,
        PBKDF2_ITERATIONS,
        dklen=HASH_LENGTH,
    )


def hash_password(password: str) -> str:
    """
    Compute the wire password sent as `b64Password`.

    ## Args:
    - `password` (str): Plaintext account password

    ## Returns:
    - `str`: Base64 encoded 32-byte digest (44 characters)

    ## Note:
    600,000 iterations take a noticeable amount of CPU time. Async callers
    should run this through `asyncio.to_thread`.
    """
    return base64.b64encode(derive_password_bytes(password)).decode("ascii")
