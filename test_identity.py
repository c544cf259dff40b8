"""
Tests for identity key protection and the account directory.
"""
import asyncio
import dataclasses

import pytest

from accounts.identity import IdentityManager
from accounts.models import Identity, User
from accounts.storage import JSONStorage
from cipher import primitives
from cipher.errors import AuthFailure
from cipher.primitives import b64d, b64e


def _der(private_key) -> bytes:
    return primitives.private_key_to_bytes(private_key)


def test_register_then_login_recovers_same_private_key(settings):
    identities = IdentityManager(settings)
    identity, private_key = identities.register("correct horse")
    recovered = identities.login("correct horse", identity)
    assert _der(recovered) == _der(private_key)
    assert identities.public_key(identity).public_numbers() == private_key.public_key().public_numbers()


def test_identity_never_contains_plaintext_private_key(settings):
    identity, private_key = IdentityManager(settings).register("correct horse")
    stored = str(identity.to_dict())
    assert b64e(_der(private_key)) not in stored
    assert len(b64d(identity.salt)) == primitives.SALT_SIZE
    assert len(b64d(identity.iv)) == primitives.NONCE_SIZE


def test_wrong_password_and_corruption_look_the_same(settings):
    identities = IdentityManager(settings)
    identity, _ = identities.register("correct horse")

    with pytest.raises(AuthFailure) as wrong:
        identities.login("battery staple", identity)

    blob = bytearray(b64d(identity.encrypted_private_key))
    blob[5] ^= 0x01
    corrupted = dataclasses.replace(identity, encrypted_private_key=b64e(bytes(blob)))
    with pytest.raises(AuthFailure) as tampered:
        identities.login("correct horse", corrupted)

    garbage = dataclasses.replace(identity, salt="***")
    with pytest.raises(AuthFailure) as malformed:
        identities.login("correct horse", garbage)

    assert str(wrong.value) == str(tampered.value) == str(malformed.value) == "invalid credentials"
    assert tampered.value.__cause__ is None


def test_change_password_rewraps_same_key(settings):
    identities = IdentityManager(settings)
    identity, private_key = identities.register("old password")
    new_identity = identities.change_password("old password", "new password", identity)

    assert new_identity.public_key == identity.public_key
    assert new_identity.salt != identity.salt
    assert new_identity.iv != identity.iv
    assert _der(identities.login("new password", new_identity)) == _der(private_key)
    with pytest.raises(AuthFailure):
        identities.login("old password", new_identity)


def test_change_password_requires_old_password(settings):
    identities = IdentityManager(settings)
    identity, _ = identities.register("old password")
    with pytest.raises(AuthFailure):
        identities.change_password("not it", "new password", identity)


def test_login_uses_stored_kdf_cost(settings):
    identity, private_key = IdentityManager(settings).register("correct horse")
    costlier = settings.model_copy(update={"KDF_ITERATIONS": settings.KDF_ITERATIONS * 2})
    assert _der(IdentityManager(costlier).login("correct horse", identity)) == _der(private_key)


def test_argon2id_identity(settings):
    argon = settings.model_copy(update={"KDF_ALGORITHM": "argon2id"})
    identities = IdentityManager(argon)
    identity, private_key = identities.register("correct horse")
    assert identity.kdf["algorithm"] == "argon2id"
    assert _der(identities.login("correct horse", identity)) == _der(private_key)


def test_tampered_kdf_fields_are_auth_failures(settings):
    identities = IdentityManager(settings.model_copy(update={"KDF_ALGORITHM": "argon2id"}))
    identity, _ = identities.register("correct horse")

    tampered = [
        dataclasses.replace(identity, kdf={**identity.kdf, "memory_cost_kib": 1}),
        dataclasses.replace(identity, kdf={**identity.kdf, "parallelism": 0}),
        dataclasses.replace(identity, kdf={"algorithm": "pbkdf2-sha256", "iterations": "many"}),
        dataclasses.replace(identity, kdf={"algorithm": "pbkdf2-sha256", "iterations": 0}),
        dataclasses.replace(identity, kdf=["argon2id"]),
        dataclasses.replace(identity, salt=b64e(b"abc")),
    ]
    for record in tampered:
        with pytest.raises(AuthFailure) as failure:
            identities.login("correct horse", record)
        assert str(failure.value) == "invalid credentials"


def test_async_variants_offload(settings):
    identities = IdentityManager(settings)

    async def scenario():
        identity, private_key = await identities.register_async("pw-async")
        recovered = await identities.login_async("pw-async", identity)
        return private_key, recovered

    private_key, recovered = asyncio.run(scenario())
    assert _der(private_key) == _der(recovered)


def test_identity_wire_names(settings):
    identity, _ = IdentityManager(settings).register("pw")
    data = identity.to_dict()
    assert {"publicKey", "encryptedPrivateKey", "iv", "salt"} <= set(data)
    assert Identity.from_dict(data) == identity


def test_account_register_login(accounts):
    session = accounts.register("Alice", "correct horse")
    assert session.user.username == "alice"
    again = accounts.login("ALICE", "correct horse")
    assert again.user_id == session.user_id
    assert _der(again.private_key) == _der(session.private_key)

    with pytest.raises(AuthFailure):
        accounts.login("alice", "wrong")
    with pytest.raises(AuthFailure):
        accounts.login("nobody", "correct horse")
    with pytest.raises(ValueError):
        accounts.register("alice", "another")


def test_account_change_password(accounts):
    session = accounts.register("bob", "first password")
    accounts.change_password(session, "first password", "second password")
    assert accounts.login("bob", "second password").user_id == session.user_id
    with pytest.raises(AuthFailure):
        accounts.login("bob", "first password")


def test_json_storage_persists_users(tmp_path, settings):
    identity, _ = IdentityManager(settings).register("pw")
    storage = JSONStorage(str(tmp_path / "users.json"))
    user = User.new("carol", "hash", identity)
    storage.save_user(user)

    reloaded = JSONStorage(str(tmp_path / "users.json"))
    assert reloaded.get_user_by_username("carol") == user
    assert reloaded.get_user_by_id(user.user_id) == user

    updated = dataclasses.replace(user, pwd_hash="other")
    reloaded.update_user(updated)
    assert storage.get_user_by_username("carol").pwd_hash == "other"
    with pytest.raises(ValueError):
        storage.save_user(user)
