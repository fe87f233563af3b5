"""
Encrypted direct conversations.

Decrypts a conversation's ledger history and sends new messages. Messages
carry no key version, so decryption tries every retained local key and
relies on the AES-GCM tag to reject the wrong ones.
"""

from typing import List, Optional, Sequence
from dataclasses import dataclass

from dmcrypto.keyring import ActiveKey, KeyRing
from dmcrypto.primitives import (
    derive_shared_secret,
    encrypt,
    decrypt,
    is_valid_public_key,
    AuthenticationFailure,
    CryptoError,
)
from .registry import Registry, Ledger, EncryptedMessage
from .session_keys import SessionKeyManager, SessionKeyError
from .logger import get_logger

log = get_logger("dmclient.conversation")

NO_PEER_KEY_TEXT = "[No session key available]"
INVALID_PEER_KEY_TEXT = "[Invalid peer key]"
UNDECRYPTABLE_TEXT = "[Unable to decrypt]"


class PeerKeyMissingError(SessionKeyError):
    """The peer has not published a session key, so we cannot send to them"""
    pass


@dataclass(frozen=True)
class DecryptedMessage:
    """
    A ledger message ready for display.

    Attributes:
        index: Position in the conversation
        content: Plaintext, or a placeholder when decryption_failed is set
        key_slot: Local slot that decrypted it ("current", "pending", "historical")
    """
    index: int
    sender_owner: str
    sender_address: str
    content: str
    timestamp: int
    is_from_me: bool
    decryption_failed: bool
    key_slot: Optional[str] = None


def _same_identity(a: str, b: str) -> bool:
    return a.lower() == b.lower()


def decrypt_message(index: int, message: EncryptedMessage, local_identity: str,
                    ring: Optional[KeyRing], peer_public_key: Optional[bytes]) -> DecryptedMessage:
    """
    Decrypt one message, never raising for cryptographic reasons.

    Outgoing messages were encrypted with our current key and the peer's key
    as known at send time, so the current key goes first. Incoming messages
    were encrypted to whichever of our keys was published then: current,
    pending, then historical newest-first.
    """
    is_from_me = _same_identity(message.sender_owner, local_identity)

    def result(content: str, failed: bool, slot: Optional[str] = None) -> DecryptedMessage:
        return DecryptedMessage(
            index=index,
            sender_owner=message.sender_owner,
            sender_address=message.sender_address,
            content=content,
            timestamp=message.timestamp,
            is_from_me=is_from_me,
            decryption_failed=failed,
            key_slot=slot
        )

    if ring is None or not peer_public_key:
        return result(NO_PEER_KEY_TEXT, True)
    if not is_valid_public_key(peer_public_key):
        return result(INVALID_PEER_KEY_TEXT, True)

    for slot, pair in ring.slots():
        try:
            shared = derive_shared_secret(pair.private_key, peer_public_key)
            return result(decrypt(shared, message.ciphertext), False, slot)
        except AuthenticationFailure:
            continue
        except CryptoError as e:
            log.warning(f"message {index} authenticated but is unreadable: {e}")
            return result(UNDECRYPTABLE_TEXT, True)

    return result(UNDECRYPTABLE_TEXT, True)


def pending_key_used(messages: Sequence[DecryptedMessage]) -> bool:
    """True if any incoming message decrypted under our pending key"""
    return any(m.key_slot == "pending" and not m.is_from_me for m in messages)


class Conversation:
    """
    One direct conversation between the local identity and a peer.
    """

    def __init__(self, conversation_id: str, local_identity: str, peer_address: str,
                 keys: SessionKeyManager, registry: Registry, ledger: Ledger,
                 sender_address: Optional[str] = None):
        """
        Args:
            conversation_id: Ledger conversation identifier
            local_identity: Our identity (owner address)
            peer_address: The other participant's identity
            keys: Our session key manager
            registry: Public key registry (peer lookups)
            ledger: Message ledger
            sender_address: Signing address when posting through a delegate
        """
        self.conversation_id = conversation_id
        self.local_identity = local_identity
        self.peer_address = peer_address
        self.keys = keys
        self.registry = registry
        self.ledger = ledger
        self.sender_address = sender_address or local_identity

    async def peer_public_key(self) -> Optional[bytes]:
        return await self.registry.fetch(self.peer_address)

    async def load_messages(self) -> List[DecryptedMessage]:
        """
        Read and decrypt the whole conversation, in ledger order.

        One undecryptable message never fails the batch.

        Raises:
            RegistryError: If the ledger or registry cannot be read
        """
        messages = await self.ledger.read_all(self.conversation_id)
        if not messages:
            return []

        peer_key = await self.peer_public_key()
        ring = self.keys.keyring()

        decrypted = [
            decrypt_message(i, m, self.local_identity, ring, peer_key)
            for i, m in enumerate(messages)
        ]
        failed = sum(1 for m in decrypted if m.decryption_failed)
        if failed:
            log.info(f"{failed}/{len(decrypted)} messages in {self.conversation_id} could not be decrypted")
        return decrypted

    async def send(self, plaintext: str) -> bytes:
        """
        Encrypt a message to the peer and append it to the ledger.

        Returns:
            The ciphertext blob that was posted

        Raises:
            PeerKeyMissingError: If the peer has no published key
            InvalidKeyMaterial: If the peer's published key is malformed
            NoSessionKeyError: If we have no local key
            RegistryError: If the registry or ledger is unreachable
        """
        peer_key = await self.peer_public_key()
        if not peer_key:
            raise PeerKeyMissingError(f"{self.peer_address} has no session key set up")

        active = self.keys.active_key()
        blob = encrypt_for(active, peer_key, plaintext)
        await self.ledger.append(self.conversation_id, blob, self.local_identity, self.sender_address)
        return blob


def encrypt_for(active: ActiveKey, peer_public_key: bytes, plaintext: str) -> bytes:
    """
    Encrypt with the live sending key only.

    Raises:
        TypeError: If given anything other than a manager-minted ActiveKey
        InvalidKeyMaterial: If the peer key is not 64 bytes on the curve
    """
    if not isinstance(active, ActiveKey):
        raise TypeError("Messages may only be sent with an ActiveKey")
    shared = derive_shared_secret(active.private_key, peer_public_key)
    return encrypt(shared, plaintext)
