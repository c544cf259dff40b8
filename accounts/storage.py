from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List
from .models import User
import json, os, tempfile


class IStorage(ABC):
    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[User]: ...
    @abstractmethod
    def get_user_by_id(self, user_id: str) -> Optional[User]: ...
    @abstractmethod
    def save_user(self, user: User) -> None: ...
    @abstractmethod
    def update_user(self, user: User) -> None: ...
    @abstractmethod
    def get_all_users(self) -> List[User]: ...


class MemoryStorage(IStorage):
    def __init__(self):
        self._users: Dict[str, User] = {}

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._users.get(username)

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return next((u for u in self._users.values() if u.user_id == user_id), None)

    def save_user(self, user: User) -> None:
        if user.username in self._users:
            raise ValueError("username already exists")
        self._users[user.username] = user

    def update_user(self, user: User) -> None:
        if user.username not in self._users:
            raise KeyError(user.username)
        self._users[user.username] = user

    def get_all_users(self) -> List[User]:
        return list(self._users.values())


class JSONStorage(IStorage):
    def __init__(self, path: str = "users.json"):
        self.path = path
        if not os.path.exists(self.path):
            self._save({"users": []})

    def _load(self) -> Dict[str, Any]:
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, data: Dict[str, Any]) -> None:
        # atomic-ish write to avoid corruption
        fd, tmp = tempfile.mkstemp(prefix="users.", suffix=".tmp", dir=os.path.dirname(self.path) or ".")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

    def get_user_by_username(self, username: str) -> Optional[User]:
        for u in self._load()["users"]:
            if u["username"] == username:
                return User.from_dict(u)
        return None

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        for u in self._load()["users"]:
            if u["user_id"] == user_id:
                return User.from_dict(u)
        return None

    def save_user(self, user: User) -> None:
        data = self._load()
        if any(u["username"] == user.username for u in data["users"]):
            raise ValueError("username already exists")
        data["users"].append(user.to_dict())
        self._save(data)

    def update_user(self, user: User) -> None:
        data = self._load()
        for i, u in enumerate(data["users"]):
            if u["user_id"] == user.user_id:
                data["users"][i] = user.to_dict()
                self._save(data)
                return
        raise KeyError(user.user_id)

    def get_all_users(self) -> List[User]:
        return [User.from_dict(u) for u in self._load()["users"]]
