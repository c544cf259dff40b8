"""
Primitive Layer

Thin wrappers over the few cryptographic building blocks the vault uses:
- AES-256-GCM authenticated encryption (nonce is always 12 bytes, the
  16-byte tag is appended to the ciphertext)
- RSA-OAEP (SHA-256) public key encryption for key wrapping
- Password based key derivation (PBKDF2-HMAC-SHA256 or Argon2id)
- HKDF-SHA256 for combining link secrets

No business logic lives here. Failures are not translated: AESGCM raises
cryptography.exceptions.InvalidTag and RSA raises ValueError, and callers
decide what that means.
"""

import base64
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

from argon2.exceptions import HashingError
from argon2.low_level import Type as Argon2Type
from argon2.low_level import hash_secret_raw
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
SALT_SIZE = 16

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


# ============================================================================
# Randomness and encoding
# ============================================================================

def random_bytes(size: int) -> bytes:
    return os.urandom(size)


def new_nonce() -> bytes:
    return os.urandom(NONCE_SIZE)


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(data: str) -> bytes:
    return base64.b64decode(data, validate=True)


# ============================================================================
# AEAD
# ============================================================================

def aead_encrypt(key: bytes, nonce: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> bytes:
    """Encrypt with AES-GCM. Returns ciphertext||tag."""
    if len(key) != KEY_SIZE:
        raise ValueError("AES-GCM key must be 256 bits")
    if len(nonce) != NONCE_SIZE:
        raise ValueError("AES-GCM nonce must be 12 bytes")
    return AESGCM(key).encrypt(nonce, plaintext, aad)


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    """
    Decrypt AES-GCM ciphertext||tag.

    Raises InvalidTag on any mismatch; no partial plaintext is ever returned.
    """
    if len(key) != KEY_SIZE:
        raise ValueError("AES-GCM key must be 256 bits")
    if len(nonce) != NONCE_SIZE:
        raise ValueError("AES-GCM nonce must be 12 bytes")
    return AESGCM(key).decrypt(nonce, ciphertext, aad)


def seal(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> bytes:
    """AEAD-encrypt under a fresh random nonce and return nonce||ciphertext||tag."""
    nonce = new_nonce()
    return nonce + aead_encrypt(key, nonce, plaintext, aad)


def open_sealed(key: bytes, sealed: bytes, aad: Optional[bytes] = None) -> bytes:
    if len(sealed) < NONCE_SIZE + TAG_SIZE:
        raise ValueError("sealed value is too short")
    return aead_decrypt(key, sealed[:NONCE_SIZE], sealed[NONCE_SIZE:], aad)


# ============================================================================
# Asymmetric
# ============================================================================

def generate_keypair(key_size: int = 4096) -> Tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return private_key, private_key.public_key()


def asym_encrypt(public_key: rsa.RSAPublicKey, plaintext: bytes) -> bytes:
    return public_key.encrypt(plaintext, _OAEP)


def asym_decrypt(private_key: rsa.RSAPrivateKey, ciphertext: bytes) -> bytes:
    """Raises ValueError when the ciphertext was not made for this key."""
    return private_key.decrypt(ciphertext, _OAEP)


def public_key_to_bytes(public_key: rsa.RSAPublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def public_key_from_bytes(data: bytes) -> rsa.RSAPublicKey:
    key = serialization.load_der_public_key(data)
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("not an RSA public key")
    return key


def private_key_to_bytes(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def private_key_from_bytes(data: bytes) -> rsa.RSAPrivateKey:
    key = serialization.load_der_private_key(data, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("not an RSA private key")
    return key


# ============================================================================
# Key derivation
# ============================================================================

# stored costs come back from the server; anything above these is refused
_KDF_CEILINGS = {
    "iterations": 10_000_000,
    "time_cost": 64,
    "memory_cost_kib": 4 * 1024 * 1024,
    "parallelism": 64,
}


@dataclass(frozen=True)
class KdfParams:
    """Cost parameters of one password derivation, stored beside its salt."""

    algorithm: str = "pbkdf2-sha256"
    iterations: int = 120_000
    time_cost: int = 3
    memory_cost_kib: int = 65536
    parallelism: int = 1

    @classmethod
    def from_settings(cls, settings) -> "KdfParams":
        return cls(
            algorithm=settings.KDF_ALGORITHM,
            iterations=settings.KDF_ITERATIONS,
            time_cost=settings.ARGON2_TIME_COST,
            memory_cost_kib=settings.ARGON2_MEMORY_COST_KIB,
            parallelism=settings.ARGON2_PARALLELISM,
        )

    def check(self) -> "KdfParams":
        """Raise ValueError unless every cost parameter is a usable integer."""
        for name, ceiling in _KDF_CEILINGS.items():
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= ceiling:
                raise ValueError(f"invalid KDF parameter: {name}")
        if self.memory_cost_kib < 8 * self.parallelism:
            raise ValueError("invalid KDF parameter: memory_cost_kib")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KdfParams":
        if not isinstance(data, dict):
            raise ValueError("KDF parameters must be a mapping")
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def derive_key(password: str, salt: bytes, params: KdfParams) -> bytes:
    """
    Derive a 256-bit key from a password and a per-identity salt.

    Unusable parameters or salts raise ValueError whichever algorithm
    rejects them.
    """
    params.check()
    secret = password.encode("utf-8")
    if params.algorithm == "pbkdf2-sha256":
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=params.iterations,
        )
        return kdf.derive(secret)
    if params.algorithm == "argon2id":
        try:
            return hash_secret_raw(
                secret=secret,
                salt=salt,
                time_cost=params.time_cost,
                memory_cost=params.memory_cost_kib,
                parallelism=params.parallelism,
                hash_len=KEY_SIZE,
                type=Argon2Type.ID,
            )
        except HashingError as exc:
            raise ValueError("argon2id derivation failed") from exc
    raise ValueError(f"unsupported KDF algorithm: {params.algorithm}")


def hkdf(material: bytes, salt: bytes, info: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, info=info).derive(material)
