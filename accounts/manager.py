import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional, List

from cryptography.hazmat.primitives.asymmetric import rsa

from cipher.errors import AuthFailure
from config import Settings, get_settings

from .hashing import SimpleHasher
from .identity import IdentityManager
from .models import User
from .storage import IStorage

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """
    An authenticated user for the lifetime of one client session.

    The private key lives here and nowhere else; it is never serialized.
    """

    user: User
    private_key: rsa.RSAPrivateKey

    @property
    def user_id(self) -> str:
        return self.user.user_id

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()


class AccountManager:
    def __init__(
        self,
        storage: IStorage,
        hasher: Optional[SimpleHasher] = None,
        identities: Optional[IdentityManager] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.storage = storage
        self.hasher = hasher or SimpleHasher(settings)
        self.identities = identities or IdentityManager(settings)

    @staticmethod
    def _canon(username: str) -> str:
        username = username.strip().lower()
        if not username:
            raise ValueError("username cannot be empty")
        return username

    def register(self, username: str, password: str) -> Session:
        username_c = self._canon(username)
        if self.storage.get_user_by_username(username_c):
            raise ValueError("Username already taken.")
        identity, private_key = self.identities.register(password)
        user = User.new(username=username_c, pwd_hash=self.hasher.hash(password), identity=identity)
        self.storage.save_user(user)
        logger.info("registered user %s", user.user_id)
        return Session(user=user, private_key=private_key)

    def login(self, username: str, password: str) -> Session:
        """Verify the password and unlock the private key; every failure is AuthFailure."""
        user = self.storage.get_user_by_username(self._canon(username))
        if not user or not self.hasher.verify(user.pwd_hash, password):
            raise AuthFailure()
        private_key = self.identities.login(password, user.identity)
        return Session(user=user, private_key=private_key)

    def change_password(self, session: Session, old_password: str, new_password: str) -> Session:
        identity = self.identities.change_password(old_password, new_password, session.user.identity)
        user = dataclasses.replace(session.user, pwd_hash=self.hasher.hash(new_password), identity=identity)
        self.storage.update_user(user)
        logger.info("password changed for user %s", user.user_id)
        return Session(user=user, private_key=session.private_key)

    def get_user_by_username(self, username: str) -> Optional[User]:
        """Get a user by their username."""
        return self.storage.get_user_by_username(self._canon(username))

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self.storage.get_user_by_id(user_id)

    def get_other_users(self, exclude_username: str) -> List[User]:
        """Get all users except the specified one."""
        exclude_c = self._canon(exclude_username)
        return [u for u in self.storage.get_all_users() if u.username != exclude_c]

