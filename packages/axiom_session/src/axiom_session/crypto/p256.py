"""
# P-256 Signing Key Derivation

Deterministic secp256r1 keypairs for the custodial (Turnkey) wallet session.

The private scalar is derived from `(password, salt)` with PBKDF2, so the
signing key never has to be stored: it can be recreated at any time from
the password and the base64 salt the server keeps as `clientSecret`.

## Example:
```python
keypair = derive_keypair("my-password")
signature = sign_raw(b"payload", keypair.private_key)
assert verify(b"payload", signature, keypair.public_key)

same = recreate_keypair("my-password", keypair.client_secret)
assert same == keypair
```

Curve arithmetic is done by OpenSSL through `cryptography`.
"""

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from axiom_session.exceptions import KeyDerivationError

from .password import PBKDF2_ITERATIONS


logger = logging.getLogger(__name__)

# Order of the secp256r1 base point
CURVE_ORDER = int(
    "ffffffff00000000ffffffffffffffffbce6faada7179e84f3b9cac2fc632550", 16
)
SALT_LENGTH = 32
SCALAR_LENGTH = 32
MAX_DERIVATION_ATTEMPTS = 4


@dataclass(frozen=True)
class P256KeyPair:
    """
    Derived signing keypair.

    ## Attributes:
    - `private_key` (str): 32-byte private scalar, hex encoded
    - `public_key` (str): 33-byte compressed SEC1 point, hex encoded
    - `client_secret` (str): Base64 salt the keypair was derived from
    """

    private_key: str
    public_key: str
    client_secret: str

    def __repr__(self) -> str:
        return f"P256KeyPair(public_key={self.public_key!r})"


def _derive_scalar(password: str, salt: bytes, attempt: int) -> int:
    # Later attempts append a big-endian counter to the salt
    kdf_salt = salt if attempt == 0 else salt + attempt.to_bytes(4, "big")
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        kdf_salt,
        PBKDF2_ITERATIONS,
        dklen=SCALAR_LENGTH,
    )
    return int.from_bytes(digest, "big")


def _load_private_key(private_key_hex: str) -> ec.EllipticCurvePrivateKey:
    try:
        scalar = int(private_key_hex, 16)
    except (TypeError, ValueError) as e:
        raise KeyDerivationError(f"Invalid private key encoding: {e}") from e
    if not 0 < scalar < CURVE_ORDER:
        raise KeyDerivationError("Private key is outside the curve order")
    return ec.derive_private_key(scalar, ec.SECP256R1())


def _compressed_public_key(private_key: ec.EllipticCurvePrivateKey) -> str:
    return (
        private_key.public_key()
        .public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
        )
        .hex()
    )


def derive_keypair(password: str, salt: bytes | None = None) -> P256KeyPair:
    """
    Derive a P-256 keypair from a password and a salt.

    ## Args:
    - `password` (str): Account password
    - `salt` (bytes, optional): 32-byte salt; a random one is generated if omitted

    ## Returns:
    - `P256KeyPair`: Keypair whose `client_secret` is the base64 salt

    ## Raises:
    - `KeyDerivationError`: If no valid scalar was found within
      `MAX_DERIVATION_ATTEMPTS` attempts
    """
    if salt is None:
        salt = os.urandom(SALT_LENGTH)

    for attempt in range(MAX_DERIVATION_ATTEMPTS):
        scalar = _derive_scalar(password, salt, attempt)
        if 0 < scalar < CURVE_ORDER:
            private_key = ec.derive_private_key(scalar, ec.SECP256R1())
            return P256KeyPair(
                private_key=scalar.to_bytes(SCALAR_LENGTH, "big").hex(),
                public_key=_compressed_public_key(private_key),
                client_secret=base64.b64encode(salt).decode("ascii"),
            )
        logger.warning(f"Derived scalar out of range on attempt {attempt + 1}")

    raise KeyDerivationError(
        f"No valid P-256 scalar after {MAX_DERIVATION_ATTEMPTS} attempts"
    )


def recreate_keypair(password: str, client_secret: str) -> P256KeyPair:
    """Re-derive the keypair identified by a stored base64 `client_secret`."""
    try:
        salt = base64.b64decode(client_secret, validate=True)
    except (binascii.Error, ValueError) as e:
        raise KeyDerivationError(f"Invalid client secret: {e}") from e
    if len(salt) != SALT_LENGTH:
        raise KeyDerivationError(
            f"Client secret must decode to {SALT_LENGTH} bytes, got {len(salt)}"
        )
    return derive_keypair(password, salt)


def public_key_from_private(private_key_hex: str) -> str:
    return _compressed_public_key(_load_private_key(private_key_hex))


def sign_der(message: bytes, private_key_hex: str) -> bytes:
    """ECDSA/SHA-256 signature in ASN.1 DER encoding."""
    private_key = _load_private_key(private_key_hex)
    return private_key.sign(message, ec.ECDSA(hashes.SHA256()))


def sign_raw(message: bytes, private_key_hex: str) -> bytes:
    """ECDSA/SHA-256 signature as fixed-width 64 bytes `r || s`."""
    r, s = decode_dss_signature(sign_der(message, private_key_hex))
    return r.to_bytes(SCALAR_LENGTH, "big") + s.to_bytes(SCALAR_LENGTH, "big")


def verify(message: bytes, signature: bytes, public_key_hex: str) -> bool:
    """
    Verify a raw (64-byte) or DER signature against a compressed public key.

    Returns False for any invalid signature or malformed input.
    """
    try:
        public_key = ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256R1(), bytes.fromhex(public_key_hex)
        )
    except ValueError:
        return False

    if len(signature) == 2 * SCALAR_LENGTH:
        r = int.from_bytes(signature[:SCALAR_LENGTH], "big")
        s = int.from_bytes(signature[SCALAR_LENGTH:], "big")
        signature = encode_dss_signature(r, s)

    try:
        public_key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        return False
