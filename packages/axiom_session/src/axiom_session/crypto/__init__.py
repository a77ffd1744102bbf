from .p256 import (
    P256KeyPair,
    derive_keypair,
    public_key_from_private,
    recreate_keypair,
    sign_der,
    sign_raw,
    verify,
)
from .password import derive_password_bytes, hash_password

__all__ = [
    "P256KeyPair",
    "derive_keypair",
    "derive_password_bytes",
    "hash_password",
    "public_key_from_private",
    "recreate_keypair",
    "sign_der",
    "sign_raw",
    "verify",
]
