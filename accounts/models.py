from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict
import uuid


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Identity:
    """
    A user's long-term keypair as the server stores it.

    `encrypted_private_key` is the PKCS#8 private key sealed with AES-GCM
    under a key derived from the password, `salt` and `kdf`; `iv` is the
    AEAD nonce. All binary fields are base64.
    """

    public_key: str
    encrypted_private_key: str
    salt: str
    iv: str
    kdf: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "publicKey": self.public_key,
            "encryptedPrivateKey": self.encrypted_private_key,
            "salt": self.salt,
            "iv": self.iv,
            "kdf": dict(self.kdf),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        return cls(
            public_key=data["publicKey"],
            encrypted_private_key=data["encryptedPrivateKey"],
            salt=data["salt"],
            iv=data["iv"],
            kdf=dict(data.get("kdf") or {}),
        )


@dataclass(frozen=True)
class User:
    # basic account information
    user_id: str
    username: str   # canonical (lowercased)
    pwd_hash: str
    created_at: str   # ISO8601 "YYYY-MM-DDTHH:MM:SSZ"

    # encryption stuff
    identity: Identity

    @staticmethod
    def new(username: str, pwd_hash: str, identity: Identity) -> "User":
        return User(
            user_id=str(uuid.uuid4()),
            username=username.lower(),
            pwd_hash=pwd_hash,
            created_at=_now_iso(),
            identity=identity,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "pwd_hash": self.pwd_hash,
            "created_at": self.created_at,
            "identity": self.identity.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            user_id=data["user_id"],
            username=data["username"],
            pwd_hash=data["pwd_hash"],
            created_at=data["created_at"],
            identity=Identity.from_dict(data["identity"]),
        )
