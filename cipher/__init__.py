"""Cryptographic primitives and error taxonomy for the encrypted vault."""

from .errors import (
    VaultError,
    AuthFailure,
    DecryptFailure,
    AuthTagMismatch,
    KeyUnavailable,
    LinkExpired,
    NotFound,
    PermissionDenied,
)

from .primitives import (
    KdfParams,
    aead_encrypt,
    aead_decrypt,
    asym_encrypt,
    asym_decrypt,
    derive_key,
    generate_keypair,
    seal,
    open_sealed,
    b64e,
    b64d,
)

__all__ = [
    # Errors
    "VaultError",
    "AuthFailure",
    "DecryptFailure",
    "AuthTagMismatch",
    "KeyUnavailable",
    "LinkExpired",
    "NotFound",
    "PermissionDenied",
    # Primitives
    "KdfParams",
    "aead_encrypt",
    "aead_decrypt",
    "asym_encrypt",
    "asym_decrypt",
    "derive_key",
    "generate_keypair",
    "seal",
    "open_sealed",
    "b64e",
    "b64d",
]
