"""
Session key data model.

A KeyRing records one identity's key lifecycle:
- current: the key used for sending and published to the registry
- pending: a freshly rotated key, already published but not yet promoted
- historical: retired keys kept for decrypting older messages (newest first)
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass, field, replace

from .primitives import (
    generate_keypair,
    public_key_from_private,
    to_hex,
    from_hex,
    InvalidKeyMaterial,
    PRIVATE_KEY_LENGTH,
    PUBLIC_KEY_LENGTH,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class KeyPair:
    """
    A secp256k1 keypair with its lifecycle timestamps.

    Attributes:
        private_key: 32-byte secret scalar
        public_key: 64-byte uncompressed point (no prefix byte)
        created_at: When the pair was generated
        retired_at: When the pair left `current` (historical keys only)
    """
    private_key: bytes
    public_key: bytes
    created_at: datetime
    retired_at: Optional[datetime] = None

    def __post_init__(self):
        if len(self.private_key) != PRIVATE_KEY_LENGTH:
            raise InvalidKeyMaterial("Stored private key has the wrong length")
        if len(self.public_key) != PUBLIC_KEY_LENGTH:
            raise InvalidKeyMaterial("Stored public key has the wrong length")
        if public_key_from_private(self.private_key) != self.public_key:
            raise InvalidKeyMaterial("Public key does not match private key")

    @classmethod
    def generate(cls, now: Optional[datetime] = None) -> 'KeyPair':
        private_key, public_key = generate_keypair()
        return cls(private_key=private_key, public_key=public_key, created_at=now or utcnow())

    def __repr__(self) -> str:
        # Never render the private half
        return f"KeyPair(public_key={to_hex(self.public_key)[:16]}..., created_at={self.created_at.isoformat()})"

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'private_key': to_hex(self.private_key),
            'public_key': to_hex(self.public_key),
            'created_at': self.created_at.isoformat(),
            'retired_at': self.retired_at.isoformat() if self.retired_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'KeyPair':
        """Create from dictionary"""
        try:
            return cls(
                private_key=from_hex(data['private_key']),
                public_key=from_hex(data['public_key']),
                created_at=_parse_ts(data['created_at']),
                retired_at=_parse_ts(data['retired_at']) if data.get('retired_at') else None
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidKeyMaterial(f"Malformed stored key: {e}")


@dataclass(frozen=True)
class KeyRing:
    """
    Immutable snapshot of an identity's keys.

    Mutations return a new ring; the manager persists the result.
    """
    current: KeyPair
    pending: Optional[KeyPair] = None
    historical: Tuple[KeyPair, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # Coerce lists from callers into the immutable form
        object.__setattr__(self, 'historical', tuple(self.historical))
        live = {self.current.public_key}
        if self.pending is not None:
            if self.pending.public_key in live:
                raise InvalidKeyMaterial("Pending key duplicates the current key")
            live.add(self.pending.public_key)
        for old in self.historical:
            if old.public_key in live:
                raise InvalidKeyMaterial("Historical keys must not contain current or pending")

    def with_pending(self, pending: KeyPair) -> 'KeyRing':
        if self.pending is not None:
            raise ValueError("A pending key already exists")
        return replace(self, pending=pending)

    def without_pending(self) -> 'KeyRing':
        return replace(self, pending=None)

    def promote_pending(self, now: datetime, max_historical: int) -> 'KeyRing':
        """
        Promote pending to current and retire the old current key.

        The ring keeps at most `max_historical` retired keys; the oldest
        fall off the end and become undecryptable.
        """
        if self.pending is None:
            return self
        retired = replace(self.current, retired_at=now)
        historical = (retired,) + self.historical
        return KeyRing(
            current=self.pending,
            pending=None,
            historical=historical[:max_historical]
        )

    def private_keys(self) -> List[bytes]:
        """All private keys in trial order: current, pending, historical newest-first"""
        keys = [self.current.private_key]
        if self.pending is not None:
            keys.append(self.pending.private_key)
        keys.extend(old.private_key for old in self.historical)
        return keys

    def slots(self) -> List[Tuple[str, KeyPair]]:
        """(slot name, pair) in the same order as private_keys()"""
        out = [("current", self.current)]
        if self.pending is not None:
            out.append(("pending", self.pending))
        out.extend(("historical", old) for old in self.historical)
        return out

    def match(self, public_key: bytes) -> Optional[str]:
        """Which slot holds this public key, if any"""
        for slot, pair in self.slots():
            if pair.public_key == public_key:
                return slot
        return None

    def private_key_for(self, public_key: bytes) -> Optional[bytes]:
        for _, pair in self.slots():
            if pair.public_key == public_key:
                return pair.private_key
        return None

    def to_dict(self) -> Dict:
        return {
            'current': self.current.to_dict(),
            'pending': self.pending.to_dict() if self.pending else None,
            'historical': [old.to_dict() for old in self.historical]
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'KeyRing':
        if not isinstance(data, dict) or not data.get('current'):
            raise InvalidKeyMaterial("Stored key ring has no current key")
        historical = data.get('historical') or []
        if not isinstance(historical, list):
            raise InvalidKeyMaterial("Stored historical keys must be a list")
        return cls(
            current=KeyPair.from_dict(data['current']),
            pending=KeyPair.from_dict(data['pending']) if data.get('pending') else None,
            historical=tuple(KeyPair.from_dict(old) for old in historical)
        )


_MINT_TOKEN = object()


class ActiveKey:
    """
    The only key that may be used to send.

    Only the session key manager mints these, always from `current`, so a
    pending or historical key can never encrypt an outgoing message.
    """

    __slots__ = ("_pair",)

    def __init__(self, pair: KeyPair, _token: object = None):
        if _token is not _MINT_TOKEN:
            raise TypeError("ActiveKey can only be obtained from SessionKeyManager.active_key()")
        self._pair = pair

    @classmethod
    def _mint(cls, ring: KeyRing) -> 'ActiveKey':
        return cls(ring.current, _MINT_TOKEN)

    @property
    def private_key(self) -> bytes:
        return self._pair.private_key

    @property
    def public_key(self) -> bytes:
        return self._pair.public_key

    def __repr__(self) -> str:
        return f"ActiveKey(public_key={to_hex(self.public_key)[:16]}...)"
