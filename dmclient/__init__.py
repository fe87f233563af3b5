"""
Client side of encrypted direct messages.

Stores session keys locally, keeps them published to the registry, and
encrypts/decrypts conversations held on the ledger.
"""

from .storage import KeyMaterialStore, StoreLockedError
from .registry import (
    Registry,
    Ledger,
    EncryptedMessage,
    InMemoryRegistry,
    InMemoryLedger,
    HttpRegistry,
    HttpLedger,
    RegistryError,
)
from .session_keys import (
    SessionKeyManager,
    KeyState,
    SyncResult,
    SessionKeyError,
    RotationInProgressError,
    NoSessionKeyError,
)
from .conversation import (
    Conversation,
    DecryptedMessage,
    PeerKeyMissingError,
    decrypt_message,
    encrypt_for,
    pending_key_used,
)

__all__ = [
    'KeyMaterialStore',
    'StoreLockedError',
    'Registry',
    'Ledger',
    'EncryptedMessage',
    'InMemoryRegistry',
    'InMemoryLedger',
    'HttpRegistry',
    'HttpLedger',
    'RegistryError',
    'SessionKeyManager',
    'KeyState',
    'SyncResult',
    'SessionKeyError',
    'RotationInProgressError',
    'NoSessionKeyError',
    'Conversation',
    'DecryptedMessage',
    'PeerKeyMissingError',
    'decrypt_message',
    'encrypt_for',
    'pending_key_used',
]
