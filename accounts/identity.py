"""
Identity Manager

Creates a user's long-term RSA keypair and protects the private half with
a password:

    wrapping_key = KDF(password, salt, cost)
    encrypted_private_key = AES-GCM(wrapping_key, iv, PKCS#8(private_key))

The plaintext private key only ever exists in the memory of the process
that derived it. Logging in re-derives the wrapping key; changing the
password re-wraps the same private key under a new salt and IV.
"""

import asyncio
import logging
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import rsa

from cipher import primitives
from cipher.errors import AuthFailure
from cipher.primitives import KdfParams, b64d, b64e
from config import Settings, get_settings

from .models import Identity

logger = logging.getLogger(__name__)

_PRIVATE_KEY_AAD = b"identity-private-key"


class IdentityManager:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _wrap(self, private_key: rsa.RSAPrivateKey, password: str) -> Identity:
        params = KdfParams.from_settings(self.settings)
        salt = primitives.random_bytes(primitives.SALT_SIZE)
        iv = primitives.new_nonce()
        wrapping_key = primitives.derive_key(password, salt, params)
        encrypted = primitives.aead_encrypt(
            wrapping_key, iv, primitives.private_key_to_bytes(private_key), _PRIVATE_KEY_AAD
        )
        return Identity(
            public_key=b64e(primitives.public_key_to_bytes(private_key.public_key())),
            encrypted_private_key=b64e(encrypted),
            salt=b64e(salt),
            iv=b64e(iv),
            kdf=params.to_dict(),
        )

    def register(self, password: str) -> Tuple[Identity, rsa.RSAPrivateKey]:
        """Generate a keypair and return its storable Identity plus the live private key."""
        if not password:
            raise ValueError("password cannot be empty")
        private_key, _ = primitives.generate_keypair(self.settings.RSA_KEY_SIZE)
        identity = self._wrap(private_key, password)
        logger.info("generated %d-bit identity keypair", self.settings.RSA_KEY_SIZE)
        return identity, private_key

    def login(self, password: str, identity: Identity) -> rsa.RSAPrivateKey:
        """
        Recover the private key from a stored Identity.

        Any failure (wrong password, tampered record, malformed field) is
        reported as AuthFailure so the cause cannot be probed.
        """
        try:
            params = KdfParams.from_dict(identity.kdf) if identity.kdf else KdfParams.from_settings(self.settings)
            wrapping_key = primitives.derive_key(password, b64d(identity.salt), params)
            der = primitives.aead_decrypt(
                wrapping_key,
                b64d(identity.iv),
                b64d(identity.encrypted_private_key),
                _PRIVATE_KEY_AAD,
            )
            private_key = primitives.private_key_from_bytes(der)
        except (InvalidTag, ValueError, TypeError, KeyError):
            logger.info("identity unlock failed")
            raise AuthFailure() from None
        return private_key

    def change_password(self, old_password: str, new_password: str, identity: Identity) -> Identity:
        if not new_password:
            raise ValueError("password cannot be empty")
        private_key = self.login(old_password, identity)
        return self._wrap(private_key, new_password)

    @staticmethod
    def public_key(identity: Identity) -> rsa.RSAPublicKey:
        return primitives.public_key_from_bytes(b64d(identity.public_key))

    # KDF and RSA generation are slow; these keep an event loop responsive.

    async def register_async(self, password: str) -> Tuple[Identity, rsa.RSAPrivateKey]:
        return await asyncio.to_thread(self.register, password)

    async def login_async(self, password: str, identity: Identity) -> rsa.RSAPrivateKey:
        return await asyncio.to_thread(self.login, password, identity)

    async def change_password_async(self, old_password: str, new_password: str, identity: Identity) -> Identity:
        return await asyncio.to_thread(self.change_password, old_password, new_password, identity)
