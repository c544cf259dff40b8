"""
Encryption Pipeline

Nonce convention for one node:
- the stored `nonce` is the AES-GCM nonce of the content ciphertext
  (AAD b"content"); a new one is drawn every time content is written
- name and mime type are separate AEAD calls under the same node key,
  each with its own random nonce carried in front of the ciphertext
  (AAD b"name" / b"mime"), so a rename never reuses a nonce
Directories have no content but still get a fresh stored nonce.
"""

from typing import Optional

from cipher import primitives
from cipher.primitives import b64d, b64e

from .models import EncryptedUpload

CONTENT_AAD = b"content"
NAME_AAD = b"name"
MIME_AAD = b"mime"


class EncryptionPipeline:
    @staticmethod
    def encrypt_content(data: bytes, file_key: bytes) -> tuple:
        """Returns (ciphertext, nonce_b64)."""
        nonce = primitives.new_nonce()
        return primitives.aead_encrypt(file_key, nonce, data, CONTENT_AAD), b64e(nonce)

    @staticmethod
    def decrypt_content(ciphertext: bytes, nonce: str, file_key: bytes) -> bytes:
        return primitives.aead_decrypt(file_key, b64d(nonce), ciphertext, CONTENT_AAD)

    @staticmethod
    def encrypt_text(text: str, file_key: bytes, aad: bytes) -> str:
        return b64e(primitives.seal(file_key, text.encode("utf-8"), aad))

    @staticmethod
    def decrypt_text(encrypted: str, file_key: bytes, aad: bytes) -> str:
        return primitives.open_sealed(file_key, b64d(encrypted), aad).decode("utf-8")

    def encrypt_name(self, name: str, file_key: bytes) -> str:
        if not name:
            raise ValueError("name cannot be empty")
        return self.encrypt_text(name, file_key, NAME_AAD)

    def encrypt_mime_type(self, mime_type: Optional[str], file_key: bytes) -> Optional[str]:
        if not mime_type:
            return None
        return self.encrypt_text(mime_type, file_key, MIME_AAD)

    def encrypt_upload(
        self,
        data: bytes,
        name: str,
        mime_type: Optional[str],
        file_key: bytes,
    ) -> EncryptedUpload:
        ciphertext, nonce = self.encrypt_content(data, file_key)
        return EncryptedUpload(
            ciphertext=ciphertext,
            encrypted_name=self.encrypt_name(name, file_key),
            nonce=nonce,
            encrypted_mime_type=self.encrypt_mime_type(mime_type, file_key),
        )

    def encrypt_directory(self, name: str, file_key: bytes, mime_type: Optional[str] = None) -> EncryptedUpload:
        return EncryptedUpload(
            ciphertext=b"",
            encrypted_name=self.encrypt_name(name, file_key),
            nonce=b64e(primitives.new_nonce()),
            encrypted_mime_type=self.encrypt_mime_type(mime_type, file_key),
        )
