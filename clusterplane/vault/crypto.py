"""
AES-256-GCM encryption for stored credentials and provisioned key material.

The master key is 32 bytes, supplied either through CLUSTERPLANE_ENCRYPTION_KEY
(hex or base64) or a key file at $CLUSTERPLANE_WORKSPACE/.vault-key (chmod 600).
Every encryption draws a fresh 12-byte nonce which is prepended to the
ciphertext, so each blob decrypts on its own.
"""

from __future__ import annotations

import base64
import binascii
import secrets
import stat
from pathlib import Path

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_FILENAME = ".vault-key"


class Cipher:
    """Symmetric cipher bound to one operator-held master key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> bytes:
        """Return nonce (12 bytes) + ciphertext + tag (16 bytes)."""
        nonce = secrets.token_bytes(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)

    def decrypt(self, data: bytes) -> str:
        """Decrypt nonce + ciphertext + tag back to plaintext."""
        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise ValueError("Encrypted data too short")
        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        return self._aead.decrypt(nonce, ciphertext, None).decode("utf-8")

    def encrypt_text(self, plaintext: str) -> str:
        """Encrypt to a base64 string, for embedding in JSON documents."""
        return base64.b64encode(self.encrypt(plaintext)).decode("ascii")

    def decrypt_text(self, token: str) -> str:
        return self.decrypt(base64.b64decode(token))

    @classmethod
    def generate(cls) -> Cipher:
        """A cipher with a random key (for tests and ephemeral use)."""
        return cls(secrets.token_bytes(KEY_SIZE))


def parse_key(raw: str) -> bytes:
    """Decode a 32-byte key given as 64 hex chars or base64."""
    raw = raw.strip()
    if len(raw) == KEY_SIZE * 2:
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass
    try:
        key = base64.b64decode(raw, validate=True)
    except binascii.Error:
        raise ValueError("Encryption key must be hex or base64 encoded") from None
    if len(key) != KEY_SIZE:
        raise ValueError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


def init_master_key(workspace: Path | str) -> Path:
    """Generate a new master key file. Returns the path. Skips if it already exists."""
    key_path = Path(workspace) / KEY_FILENAME
    if key_path.exists():
        return key_path
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_bytes(secrets.token_bytes(KEY_SIZE))
    key_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 600
    return key_path


def load_master_key(workspace: Path | str, raw_key: str = "") -> bytes:
    """Resolve the master key: explicit raw key first, then the workspace key file."""
    if raw_key:
        return parse_key(raw_key)

    key_path = Path(workspace) / KEY_FILENAME
    if not key_path.exists():
        raise FileNotFoundError(
            f"Master key not found at {key_path}. "
            "Set CLUSTERPLANE_ENCRYPTION_KEY or run 'clusterplane keygen'."
        )
    key = key_path.read_bytes()
    if len(key) != KEY_SIZE:
        raise ValueError(f"Master key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


def cipher_from_config() -> Cipher:
    """Build the process-wide cipher from the loaded configuration."""
    from clusterplane.config import get_config

    cfg = get_config()
    return Cipher(load_master_key(cfg.workspace, cfg.encryption_key))
