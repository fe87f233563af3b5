"""
Session Key Management

Manages the ECDH session keys used for encrypted DMs. Keys live in a local
KeyMaterialStore, separate from the signing wallet; only public halves are
published to the registry.

Rotation strategy:
1. rotate() generates a key, stores it as `pending` and publishes it at once,
   so new senders encrypt to it
2. confirm_pending() promotes it once the caller sees evidence the rotation
   took (e.g. a peer message decrypted with the pending key)
3. The old current key moves to `historical` for decrypting older messages
"""

import asyncio
import enum
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from dmcrypto.config import KeyPolicy
from dmcrypto.keyring import KeyPair, KeyRing, ActiveKey, utcnow
from dmcrypto.primitives import fingerprint
from .registry import Registry
from .storage import KeyMaterialStore
from .logger import get_logger

log = get_logger("dmclient.session_keys")


class SessionKeyError(Exception):
    """Base exception for session key preconditions"""
    pass


class RotationInProgressError(SessionKeyError):
    """rotate() was called while a pending key already exists"""
    pass


class NoSessionKeyError(SessionKeyError):
    """An operation needs a current key but none exists locally"""
    pass


class KeyState(enum.Enum):
    ABSENT = "absent"
    READY = "ready"
    ROTATION_PENDING = "rotation_pending"
    CLEARED = "cleared"


class SyncResult(enum.Enum):
    IN_SYNC = "in_sync"
    REPUBLISHED = "republished"
    REGENERATED = "regenerated"
    NO_KEY = "no_key"


class SessionKeyManager:
    """
    Orchestrates the session key lifecycle for one local identity.

    Every read-modify-write of the ring runs under a single asyncio lock, so
    rotate() cannot interleave with confirm_pending() on the same ring.
    """

    def __init__(self, owner: str, store: KeyMaterialStore, registry: Registry,
                 policy: Optional[KeyPolicy] = None,
                 clock: Callable[[], datetime] = utcnow):
        """
        Args:
            owner: Local identity whose key is published
            store: Local key material store
            registry: Public key registry
            policy: Rotation and retention thresholds
            clock: Source of timezone-aware "now"
        """
        self.owner = owner
        self.store = store
        self.registry = registry
        self.policy = policy or KeyPolicy()
        self.clock = clock
        self._lock = asyncio.Lock()
        self._cleared = False

    # ----- queries -----

    @property
    def state(self) -> KeyState:
        ring = self.store.load()
        if ring is None:
            return KeyState.CLEARED if self._cleared else KeyState.ABSENT
        if ring.pending is not None:
            return KeyState.ROTATION_PENDING
        return KeyState.READY

    def has_key(self) -> bool:
        return self.store.load() is not None

    def has_pending(self) -> bool:
        ring = self.store.load()
        return ring is not None and ring.pending is not None

    def current_public_key(self) -> Optional[bytes]:
        ring = self.store.load()
        return ring.current.public_key if ring else None

    def keyring(self) -> Optional[KeyRing]:
        return self.store.load()

    def private_keys(self) -> List[bytes]:
        """Private keys in trial order: current, pending, historical newest-first"""
        ring = self.store.load()
        return ring.private_keys() if ring else []

    def active_key(self) -> ActiveKey:
        """
        The key to send with. Always minted from `current`.

        Raises:
            NoSessionKeyError: If no local key exists yet
        """
        ring = self.store.load()
        if ring is None:
            raise NoSessionKeyError("No session key; call ensure_key() first")
        return ActiveKey._mint(ring)

    def key_age(self) -> Optional[timedelta]:
        ring = self.store.load()
        if ring is None:
            return None
        return self.clock() - ring.current.created_at

    def key_age_days(self) -> float:
        age = self.key_age()
        if age is None:
            return 0.0
        return age.total_seconds() / 86400

    def needs_rotation(self) -> bool:
        """True once the current key is older than the policy allows (advisory only)"""
        return self.key_age_days() > self.policy.max_key_age_days

    # ----- lifecycle -----

    async def ensure_key(self) -> bytes:
        """
        Make sure a current key exists and is published.

        Idempotent: with an existing current key this does nothing, and in
        particular does not publish again.

        Returns:
            The current public key

        Raises:
            RegistryError: If publication fails; nothing is stored locally
        """
        async with self._lock:
            ring = self.store.load()
            if ring is not None:
                return ring.current.public_key
            return await self._generate_and_publish()

    async def _generate_and_publish(self) -> bytes:
        # Caller holds the lock
        pair = KeyPair.generate(self.clock())
        await self.registry.publish(self.owner, pair.public_key)
        self.store.save(KeyRing(current=pair))
        self._cleared = False
        log.info(f"generated session key {fingerprint(pair.public_key)} for {self.owner}")
        return pair.public_key

    async def rotate(self) -> bytes:
        """
        Start a rotation: store a new pending key and publish it.

        Publication happens before promotion; the registry is what tells new
        senders which key to use. If publication fails or is cancelled the
        pending key is discarded and the ring is left exactly as it was.

        Returns:
            The newly published public key

        Raises:
            RotationInProgressError: If a pending key already exists
            RegistryError: If publication fails
        """
        async with self._lock:
            ring = self.store.load()
            if ring is None:
                return await self._generate_and_publish()
            if ring.pending is not None:
                raise RotationInProgressError("A key rotation is already pending")

            pending = KeyPair.generate(self.clock())
            self.store.save(ring.with_pending(pending))
            try:
                await self.registry.publish(self.owner, pending.public_key)
            except BaseException:
                # Cancellation included
                self.store.save(ring)
                log.warning(f"rotation for {self.owner} aborted: publish did not complete")
                raise

            log.info(f"rotation started for {self.owner}: pending {fingerprint(pending.public_key)}")
            return pending.public_key

    async def confirm_pending(self) -> bool:
        """
        Promote the pending key to current and retire the old current key.

        Returns:
            True if a pending key was promoted
        """
        async with self._lock:
            ring = self.store.load()
            if ring is None or ring.pending is None:
                return False
            promoted = ring.promote_pending(self.clock(), self.policy.max_historical_keys)
            self.store.save(promoted)
            log.info(
                f"promoted {fingerprint(promoted.current.public_key)} for {self.owner}; "
                f"{len(promoted.historical)} historical keys retained"
            )
            return True

    async def cancel_rotation(self) -> bool:
        """
        Drop the pending key without promoting it.

        The registry keeps the already-published pending public key; messages
        sent to it after cancellation cannot be decrypted.
        """
        async with self._lock:
            ring = self.store.load()
            if ring is None or ring.pending is None:
                return False
            self.store.save(ring.without_pending())
            log.warning(f"rotation cancelled for {self.owner}; registry still holds the discarded key")
            return True

    async def sync_with_registry(self) -> SyncResult:
        """
        Reconcile local state with the registry's published key.

        - registry empty, local key present: republish the newest local key
        - registry set, no local key: the private key is lost; generate and
          publish a fresh one (older messages become undecryptable)
        - both present: no action, mismatches are left to the caller
        """
        async with self._lock:
            published = await self.registry.fetch(self.owner)
            ring = self.store.load()

            if not published:
                if ring is None:
                    return SyncResult.NO_KEY
                newest = ring.pending or ring.current
                await self.registry.publish(self.owner, newest.public_key)
                log.info(f"republished session key {fingerprint(newest.public_key)} for {self.owner}")
                return SyncResult.REPUBLISHED

            if ring is None:
                log.warning(
                    f"registry holds key {fingerprint(published)} for {self.owner} but no local "
                    f"private key exists; regenerating"
                )
                await self._generate_and_publish()
                return SyncResult.REGENERATED

            return SyncResult.IN_SYNC

    async def reset(self, clear_registry: bool = False):
        """
        Delete all local key material. Explicit user action only.

        Args:
            clear_registry: Also remove the published key; otherwise the
                registry keeps an orphaned public key until overwritten
        """
        async with self._lock:
            if clear_registry:
                await self.registry.clear(self.owner)
            self.store.clear()
            self._cleared = True
            log.warning(f"session keys reset for {self.owner}")
