#!/usr/bin/env python3
"""
Tests for the session key lifecycle: first use, rotation, registry sync, reset.
"""

import sys
import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from dmcrypto.config import KeyPolicy
from dmcrypto.primitives import derive_shared_secret, encrypt, decrypt, generate_keypair, AuthenticationFailure
from dmclient.registry import InMemoryRegistry, RegistryError
from dmclient.storage import KeyMaterialStore
from dmclient.session_keys import (
    SessionKeyManager,
    KeyState,
    SyncResult,
    RotationInProgressError,
    NoSessionKeyError,
)


OWNER = "0xAlice"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def run(test):
    """Run an async test body against a fresh store and registry"""
    def wrapper():
        with tempfile.TemporaryDirectory() as tmp:
            store = KeyMaterialStore(OWNER, tmp)
            try:
                asyncio.run(test(store, InMemoryRegistry()))
            finally:
                store.close()
    wrapper.__name__ = test.__name__
    wrapper.__doc__ = test.__doc__
    return wrapper


@run
async def test_ensure_key_generates_and_publishes(store, registry):
    """First ensure_key() creates a key and publishes its public half"""
    print("Testing ensure_key...")

    manager = SessionKeyManager(OWNER, store, registry)
    assert manager.state == KeyState.ABSENT

    public_key = await manager.ensure_key()
    assert len(public_key) == 64
    assert await registry.fetch(OWNER) == public_key, "Registry has a different key"
    assert manager.state == KeyState.READY
    assert store.load().current.public_key == public_key

    print("✓ ensure_key works")


@run
async def test_ensure_key_is_idempotent(store, registry):
    """A second ensure_key() keeps the key and does not publish again"""
    manager = SessionKeyManager(OWNER, store, registry)
    first = await manager.ensure_key()
    second = await manager.ensure_key()

    assert first == second, "ensure_key rotated silently"
    assert registry.publish_count == 1, "ensure_key published twice"


@run
async def test_ensure_key_publish_failure(store, registry):
    """Publish failure propagates and stores nothing"""
    manager = SessionKeyManager(OWNER, store, registry)
    registry.fail_writes = True
    try:
        await manager.ensure_key()
        assert False, "Should have raised RegistryError"
    except RegistryError:
        pass

    assert store.load() is None, "Key stored despite failed publish"
    assert manager.state == KeyState.ABSENT


@run
async def test_rotate_publishes_pending(store, registry):
    """rotate() stores a pending key and publishes it before promotion"""
    print("Testing rotation...")

    manager = SessionKeyManager(OWNER, store, registry)
    k1 = await manager.ensure_key()
    k2 = await manager.rotate()

    assert k2 != k1
    assert await registry.fetch(OWNER) == k2, "Registry not updated to pending key"
    assert manager.state == KeyState.ROTATION_PENDING
    assert manager.current_public_key() == k1, "Pending key promoted too early"
    assert manager.active_key().public_key == k1, "Sending must use the current key"
    assert len(manager.private_keys()) == 2

    promoted = await manager.confirm_pending()
    assert promoted
    assert manager.state == KeyState.READY
    assert manager.current_public_key() == k2
    ring = manager.keyring()
    assert [old.public_key for old in ring.historical] == [k1]

    print("✓ Rotation works")


@run
async def test_second_rotate_is_rejected(store, registry):
    """Only one rotation may be pending"""
    manager = SessionKeyManager(OWNER, store, registry)
    await manager.ensure_key()
    pending = await manager.rotate()
    try:
        await manager.rotate()
        assert False, "Second rotation accepted"
    except RotationInProgressError:
        pass

    assert store.load().pending.public_key == pending, "Pending key overwritten"
    assert registry.publish_count == 2


@run
async def test_rotate_without_key_acts_as_ensure(store, registry):
    manager = SessionKeyManager(OWNER, store, registry)
    public_key = await manager.rotate()
    assert manager.state == KeyState.READY
    assert manager.current_public_key() == public_key


@run
async def test_rotate_publish_failure_rolls_back(store, registry):
    """Failed publication discards the pending key"""
    print("Testing rotation rollback...")

    manager = SessionKeyManager(OWNER, store, registry)
    k1 = await manager.ensure_key()
    before = store.load()

    registry.fail_writes = True
    try:
        await manager.rotate()
        assert False, "Should have raised RegistryError"
    except RegistryError:
        pass

    assert store.load() == before, "Ring changed after failed rotation"
    assert manager.state == KeyState.READY
    assert await registry.fetch(OWNER) == k1

    print("✓ Rotation rollback works")


class StallingRegistry(InMemoryRegistry):
    """Registry whose publish hangs while `stall` is set"""

    def __init__(self):
        super().__init__()
        self.stall = False

    async def publish(self, owner: str, public_key: bytes) -> None:
        if self.stall:
            await asyncio.sleep(10)
        await super().publish(owner, public_key)


@run
async def test_rotate_timeout_rolls_back(store, registry):
    """A rotate cancelled by a caller timeout leaves no pending key behind"""
    print("Testing rotation timeout...")

    registry = StallingRegistry()
    manager = SessionKeyManager(OWNER, store, registry)
    k1 = await manager.ensure_key()
    before = store.load()

    registry.stall = True
    try:
        await asyncio.wait_for(manager.rotate(), 0.05)
        assert False, "Should have timed out"
    except asyncio.TimeoutError:
        pass

    assert manager.state == KeyState.READY, "Pending key left after timeout"
    assert store.load() == before
    assert await registry.fetch(OWNER) == k1

    registry.stall = False
    k2 = await manager.rotate()
    assert manager.state == KeyState.ROTATION_PENDING
    assert await registry.fetch(OWNER) == k2

    print("✓ Rotation timeout works")


@run
async def test_cancel_rotation(store, registry):
    """Cancel drops pending locally but leaves the registry alone"""
    manager = SessionKeyManager(OWNER, store, registry)
    k1 = await manager.ensure_key()
    k2 = await manager.rotate()

    assert await manager.cancel_rotation()
    assert manager.state == KeyState.READY
    assert manager.current_public_key() == k1
    assert await registry.fetch(OWNER) == k2, "Cancel must not touch the registry"
    assert not await manager.cancel_rotation()
    assert not await manager.confirm_pending()


@run
async def test_history_is_bounded(store, registry):
    manager = SessionKeyManager(OWNER, store, registry, policy=KeyPolicy(max_historical_keys=3))
    await manager.ensure_key()
    for _ in range(6):
        await manager.rotate()
        await manager.confirm_pending()

    assert len(manager.keyring().historical) == 3


@run
async def test_rotation_preserves_history_access(store, registry):
    """A message to the pre-rotation key still decrypts via historical keys"""
    manager = SessionKeyManager(OWNER, store, registry)
    old_public = await manager.ensure_key()
    bob_private, bob_public = generate_keypair()
    blob = encrypt(derive_shared_secret(bob_private, old_public), "from before")

    await manager.rotate()
    await manager.confirm_pending()

    recovered = None
    for private_key in manager.private_keys():
        try:
            recovered = decrypt(derive_shared_secret(private_key, bob_public), blob)
            break
        except AuthenticationFailure:
            continue
    assert recovered == "from before", "Lost access to pre-rotation message"


@run
async def test_sync_republishes_missing_key(store, registry):
    """Registry empty, local key present: republish"""
    print("Testing registry sync...")

    manager = SessionKeyManager(OWNER, store, registry)
    public_key = await manager.ensure_key()
    await registry.clear(OWNER)

    assert await manager.sync_with_registry() == SyncResult.REPUBLISHED
    assert await registry.fetch(OWNER) == public_key
    assert await manager.sync_with_registry() == SyncResult.IN_SYNC

    print("✓ Registry sync works")


@run
async def test_sync_republishes_pending_key(store, registry):
    manager = SessionKeyManager(OWNER, store, registry)
    await manager.ensure_key()
    pending = await manager.rotate()
    await registry.clear(OWNER)

    assert await manager.sync_with_registry() == SyncResult.REPUBLISHED
    assert await registry.fetch(OWNER) == pending


@run
async def test_sync_regenerates_lost_key(store, registry):
    """Registry has a key but the local private key is gone"""
    _, orphan = generate_keypair()
    await registry.publish(OWNER, orphan)

    manager = SessionKeyManager(OWNER, store, registry)
    assert await manager.sync_with_registry() == SyncResult.REGENERATED
    fresh = await registry.fetch(OWNER)
    assert fresh != orphan
    assert manager.current_public_key() == fresh


@run
async def test_sync_with_nothing(store, registry):
    manager = SessionKeyManager(OWNER, store, registry)
    assert await manager.sync_with_registry() == SyncResult.NO_KEY
    assert registry.publish_count == 0


@run
async def test_sync_read_failure_propagates(store, registry):
    manager = SessionKeyManager(OWNER, store, registry)
    registry.fail_reads = True
    try:
        await manager.sync_with_registry()
        assert False, "Should have raised RegistryError"
    except RegistryError:
        pass


@run
async def test_reset(store, registry):
    """reset() clears local keys; the registry only on request"""
    manager = SessionKeyManager(OWNER, store, registry)
    public_key = await manager.ensure_key()

    await manager.reset()
    assert manager.state == KeyState.CLEARED
    assert store.load() is None
    assert await registry.fetch(OWNER) == public_key, "Registry cleared without being asked"

    try:
        manager.active_key()
        assert False, "Active key available after reset"
    except NoSessionKeyError:
        pass

    await manager.ensure_key()
    assert manager.state == KeyState.READY
    await manager.reset(clear_registry=True)
    assert await registry.fetch(OWNER) is None


def test_key_age_and_rotation_policy():
    """Key age is measured from creation; rotation is advised past the threshold"""
    print("Testing key age...")

    async def body(store, registry):
        clock = FakeClock()
        manager = SessionKeyManager(OWNER, store, registry, policy=KeyPolicy(max_key_age_days=7), clock=clock)
        assert manager.key_age() is None
        assert manager.key_age_days() == 0.0
        assert not manager.needs_rotation()

        await manager.ensure_key()
        clock.advance(days=3)
        assert manager.key_age() == timedelta(days=3)
        assert not manager.needs_rotation()

        clock.advance(days=5)
        assert manager.needs_rotation()

        await manager.rotate()
        await manager.confirm_pending()
        assert manager.key_age_days() == 0.0
        assert not manager.needs_rotation()

    run(body)()
    print("✓ Key age works")


@run
async def test_concurrent_rotations_serialize(store, registry):
    """Racing rotate() calls: one wins, the other is rejected"""
    manager = SessionKeyManager(OWNER, store, registry)
    await manager.ensure_key()

    results = await asyncio.gather(manager.rotate(), manager.rotate(), return_exceptions=True)
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1 and isinstance(errors[0], RotationInProgressError)
    assert manager.state == KeyState.ROTATION_PENDING


def run_all_tests():
    """Run all tests"""
    print("\n" + "="*50)
    print("Running Session Key Tests")
    print("="*50 + "\n")

    tests = [
        test_ensure_key_generates_and_publishes,
        test_ensure_key_is_idempotent,
        test_ensure_key_publish_failure,
        test_rotate_publishes_pending,
        test_second_rotate_is_rejected,
        test_rotate_without_key_acts_as_ensure,
        test_rotate_publish_failure_rolls_back,
        test_rotate_timeout_rolls_back,
        test_cancel_rotation,
        test_history_is_bounded,
        test_rotation_preserves_history_access,
        test_sync_republishes_missing_key,
        test_sync_republishes_pending_key,
        test_sync_regenerates_lost_key,
        test_sync_with_nothing,
        test_sync_read_failure_propagates,
        test_reset,
        test_key_age_and_rotation_policy,
        test_concurrent_rotations_serialize,
    ]

    try:
        for test in tests:
            test()

        print("\n" + "="*50)
        print("✓ All tests passed!")
        print("="*50 + "\n")
        return 0

    except AssertionError as e:
        print(f"\n✗ Test failed: {e}")
        return 1
    except Exception as e:
        print(f"\n✗ Unexpected error: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(run_all_tests())
