from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ============ Key derivation ============
    KDF_ALGORITHM: str = Field(default="pbkdf2-sha256", description="pbkdf2-sha256 or argon2id")
    KDF_ITERATIONS: int = 120_000
    ARGON2_TIME_COST: int = 3
    ARGON2_MEMORY_COST_KIB: int = 65536
    ARGON2_PARALLELISM: int = 1

    # ============ Keys ============
    RSA_KEY_SIZE: int = 4096
    LINK_SECRET_BYTES: int = 32
    KEY_CACHE_SIZE: int = Field(default=1024, ge=1, description="unwrapped node keys kept per session")

    # ============ Ciphertext fetch ============
    FETCH_RETRIES: int = 3
    FETCH_RETRY_DELAY: float = 0.25  # seconds, doubled on every attempt

    # ============ Local storage ============
    VAULT_ROOT: str = "vault"
    USERS_FILE: str = "users.json"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="VAULT_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("KDF_ALGORITHM")
    @classmethod
    def _known_kdf(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("pbkdf2-sha256", "argon2id"):
            raise ValueError(f"unsupported KDF algorithm: {value}")
        return value

    @field_validator("RSA_KEY_SIZE")
    @classmethod
    def _strong_rsa(cls, value: int) -> int:
        if value < 2048:
            raise ValueError("RSA_KEY_SIZE must be at least 2048 bits")
        return value

    @field_validator("LINK_SECRET_BYTES")
    @classmethod
    def _long_secret(cls, value: int) -> int:
        if value < 16:
            raise ValueError("LINK_SECRET_BYTES must be at least 16")
        return value


@lru_cache()
def get_settings() -> Settings:
    return Settings()
