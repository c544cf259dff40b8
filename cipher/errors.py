"""
Error taxonomy surfaced at the vault's UI boundary.

Messages are deliberately generic: callers may show them to users, and
they must not help anyone tell one failure cause from another.
"""


class VaultError(Exception):
    """Base class for every failure the core reports to its callers."""

    message = "operation failed"

    def __init__(self, message: str = ""):
        super().__init__(message or self.message)


class AuthFailure(VaultError):
    """Wrong password or corrupted wrapped private key (never told apart)."""

    message = "invalid credentials"


class DecryptFailure(VaultError):
    """The ciphertext, key and nonce of a node do not fit together."""

    message = "this file could not be decrypted"


class AuthTagMismatch(DecryptFailure):
    pass


class KeyUnavailable(VaultError):
    """The caller holds no valid path to the node's key."""

    message = "no access to this file"


class LinkExpired(KeyUnavailable):
    message = "this link has expired"


class NotFound(VaultError):
    message = "not found"


class PermissionDenied(VaultError):
    message = "you do not have permission to change this file"
