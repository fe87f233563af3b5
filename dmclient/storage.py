"""
Local key material storage for the DM client.

Persists one KeyRing per identity in its own SQLite file, apart from any
other stored secret. The ring can optionally be sealed on disk with a key
derived from the user's password.
"""

import os
import json
import sqlite3
from typing import Optional
from pathlib import Path
from datetime import datetime, timezone
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from dmcrypto.keyring import KeyRing
from dmcrypto.primitives import CryptoError
from .logger import get_logger

log = get_logger("dmclient.storage")

RING_ROW = "session_keys"


class StoreLockedError(Exception):
    """The stored ring is sealed under a different password"""
    pass


class KeyMaterialStore:
    """
    Durable storage for a single identity's KeyRing.

    Writes are one SQLite transaction, so a failed save leaves the previous
    ring intact.
    """

    def __init__(self, identity: str, storage_dir: str = "client_data", password: Optional[str] = None):
        """
        Initialize key storage.

        Args:
            identity: Local identity (address) the ring belongs to
            storage_dir: Directory holding the key database
            password: If given, rings are encrypted at rest with a key derived from it

        Raises:
            StoreLockedError: If a sealed ring exists and the password cannot open it
        """
        self.identity = identity
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        safe_name = "".join(c if c.isalnum() or c in "-_" else "_" for c in identity.lower())
        self.db_path = self.storage_dir / f"{safe_name}.keys.db"
        self.salt_path = self.storage_dir / f"{safe_name}.keys.salt"
        self.encryption_key: Optional[bytes] = None
        if password is not None:
            self.encryption_key = self.derive_key(password, self._load_or_create_salt())

        self.db = sqlite3.connect(str(self.db_path))
        self._init_database()

        if self.encryption_key and not self._unlocks_stored_ring():
            self.close()
            raise StoreLockedError(f"Password does not unlock the key store of {identity}")

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive the at-rest encryption key from a password using PBKDF2.

        Args:
            password: User's password
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return kdf.derive(password.encode())

    def _load_or_create_salt(self) -> bytes:
        if self.salt_path.exists():
            with open(self.salt_path, "rb") as f:
                return f.read()
        salt = os.urandom(16)
        with open(self.salt_path, "wb") as f:
            f.write(salt)
        return salt

    def _init_database(self):
        """Initialize SQLite database"""
        with self.db:
            self.db.execute("""
                CREATE TABLE IF NOT EXISTS keyring (
                    name TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    data BLOB NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    def _seal(self, data: bytes) -> bytes:
        if not self.encryption_key:
            return data
        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        return nonce + aesgcm.encrypt(nonce, data, self.identity.encode())

    def _open(self, data: bytes) -> bytes:
        if not self.encryption_key:
            return data
        aesgcm = AESGCM(self.encryption_key)
        return aesgcm.decrypt(data[:12], data[12:], self.identity.encode())

    def _unlocks_stored_ring(self) -> bool:
        """Check the stored row, if any, authenticates under our key"""
        row = self.db.execute("SELECT data FROM keyring WHERE name = ?", (RING_ROW,)).fetchone()
        if not row:
            return True
        try:
            self._open(row[0])
            return True
        except (InvalidTag, ValueError):
            return False

    def load(self) -> Optional[KeyRing]:
        """
        Load the stored key ring.

        Returns:
            The KeyRing, or None if nothing is stored or the data is unusable
        """
        if not self.db:
            return None

        try:
            row = self.db.execute(
                "SELECT owner, data FROM keyring WHERE name = ?", (RING_ROW,)
            ).fetchone()
        except sqlite3.Error as e:
            log.warning(f"key store unreadable for {self.identity}: {e}")
            return None

        if not row:
            return None

        owner, data = row
        if owner != self.identity:
            log.warning(f"key store belongs to {owner}, not {self.identity}")
            return None

        try:
            return KeyRing.from_dict(json.loads(self._open(data).decode()))
        except (InvalidTag, CryptoError, ValueError, TypeError, KeyError, AttributeError) as e:
            log.warning(f"discarding unusable key ring for {self.identity}: {type(e).__name__}")
            return None

    def save(self, ring: KeyRing):
        """
        Save the key ring, replacing any previous one.

        Args:
            ring: Key ring to persist

        Raises:
            StoreLockedError: If the stored ring is sealed under another password
        """
        sealed = self._seal(json.dumps(ring.to_dict()).encode())
        timestamp = datetime.now(timezone.utc).isoformat()

        # Commits on success, rolls back on any error
        with self.db:
            if self.encryption_key and not self._unlocks_stored_ring():
                raise StoreLockedError(f"Refusing to overwrite the sealed key ring of {self.identity}")
            self.db.execute(
                "INSERT OR REPLACE INTO keyring (name, owner, data, updated_at) VALUES (?, ?, ?, ?)",
                (RING_ROW, self.identity, sealed, timestamp)
            )

    def clear(self):
        """
        Remove all key material for this identity.

        Destructive and not recoverable. Only explicit reset calls this,
        never a disconnect.
        """
        with self.db:
            self.db.execute("DELETE FROM keyring")
        log.info(f"cleared key material for {self.identity}")

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None

    def __enter__(self) -> 'KeyMaterialStore':
        return self

    def __exit__(self, *exc):
        self.close()
