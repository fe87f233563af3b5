"""
External collaborators: the public key registry and the message ledger.

The registry maps an address to its currently published session public key
(one per owner, overwritten on rotation). The ledger appends opaque
ciphertext blobs to a conversation and returns them in order.
"""

from typing import Dict, List, Optional
from dataclasses import dataclass
import httpx
from pydantic import BaseModel, ValidationError

from dmcrypto.primitives import to_hex, from_hex, fingerprint, InvalidKeyMaterial
from .logger import get_logger

log = get_logger("dmclient.registry")


class RegistryError(Exception):
    """Registry or ledger I/O failed (network, timeout, unexpected response)"""
    pass


@dataclass(frozen=True)
class EncryptedMessage:
    """
    A message as stored on the ledger.

    Attributes:
        sender_owner: Identity whose profile sent the message
        sender_address: Signing address that posted it (may be a delegate)
        ciphertext: nonce + ciphertext + tag
        timestamp: Ledger timestamp (seconds)
    """
    sender_owner: str
    sender_address: str
    ciphertext: bytes
    timestamp: int


def _norm(address: str) -> str:
    return address.lower()


class Registry:
    """Contract for the public key registry."""

    async def publish(self, owner: str, public_key: bytes) -> None:
        raise NotImplementedError

    async def fetch(self, address: str) -> Optional[bytes]:
        """Return the published key, or None when nothing is published"""
        raise NotImplementedError

    async def clear(self, owner: str) -> None:
        raise NotImplementedError


class Ledger:
    """Contract for the append-only conversation ledger."""

    async def append(self, conversation_id: str, ciphertext: bytes, sender_owner: str,
                     sender_address: Optional[str] = None) -> None:
        raise NotImplementedError

    async def read_all(self, conversation_id: str) -> List[EncryptedMessage]:
        raise NotImplementedError


class InMemoryRegistry(Registry):
    """
    Process-local registry.

    Set `fail_writes` / `fail_reads` to simulate an unavailable registry.
    """

    def __init__(self):
        self.keys: Dict[str, bytes] = {}
        self.publish_count = 0
        self.fail_writes = False
        self.fail_reads = False

    async def publish(self, owner: str, public_key: bytes) -> None:
        if self.fail_writes:
            raise RegistryError("registry unavailable")
        self.keys[_norm(owner)] = bytes(public_key)
        self.publish_count += 1

    async def fetch(self, address: str) -> Optional[bytes]:
        if self.fail_reads:
            raise RegistryError("registry unavailable")
        return self.keys.get(_norm(address))

    async def clear(self, owner: str) -> None:
        if self.fail_writes:
            raise RegistryError("registry unavailable")
        self.keys.pop(_norm(owner), None)


class InMemoryLedger(Ledger):
    """Process-local ledger"""

    def __init__(self, clock=None):
        self.conversations: Dict[str, List[EncryptedMessage]] = {}
        self._clock = clock

    async def append(self, conversation_id: str, ciphertext: bytes, sender_owner: str,
                     sender_address: Optional[str] = None) -> None:
        messages = self.conversations.setdefault(conversation_id, [])
        timestamp = self._clock() if self._clock else len(messages)
        messages.append(EncryptedMessage(
            sender_owner=sender_owner,
            sender_address=sender_address or sender_owner,
            ciphertext=bytes(ciphertext),
            timestamp=int(timestamp)
        ))

    async def read_all(self, conversation_id: str) -> List[EncryptedMessage]:
        return list(self.conversations.get(conversation_id, []))


# Wire models for the HTTP collaborators
class PublishedKeyPayload(BaseModel):
    owner: str
    public_key: str


class LedgerMessagePayload(BaseModel):
    sender_owner: str
    sender_address: str
    ciphertext: str
    timestamp: int


class LedgerPage(BaseModel):
    messages: List[LedgerMessagePayload]


class HttpRegistry(Registry):
    """
    Registry reached over HTTP.

    Endpoints:
        PUT    /api/session-keys/{owner}   {"owner": ..., "public_key": hex}
        GET    /api/session-keys/{address} -> {"owner": ..., "public_key": hex}
        DELETE /api/session-keys/{owner}
    """

    def __init__(self, server_url: str = "http://localhost:8000", timeout: float = 10.0,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize registry client.

        Args:
            server_url: Base URL of the registry service
            timeout: Per-request timeout in seconds; expiry is an I/O failure
            http_client: Optional preconfigured client (tests inject a MockTransport)
        """
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def publish(self, owner: str, public_key: bytes) -> None:
        payload = PublishedKeyPayload(owner=owner, public_key=to_hex(public_key))
        try:
            response = await self.http_client.put(
                f"{self.server_url}/api/session-keys/{owner}",
                json=payload.model_dump()
            )
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to publish session key: {e}")

        if response.status_code not in (200, 201, 204):
            raise RegistryError(f"Registry rejected session key: HTTP {response.status_code}")
        log.info(f"published session key {fingerprint(public_key)} for {owner}")

    async def fetch(self, address: str) -> Optional[bytes]:
        try:
            response = await self.http_client.get(f"{self.server_url}/api/session-keys/{address}")
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to fetch session key: {e}")

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise RegistryError(f"Registry lookup failed: HTTP {response.status_code}")

        try:
            payload = PublishedKeyPayload.model_validate(response.json())
            if payload.public_key in ("", "0x"):
                return None
            return from_hex(payload.public_key)
        except (ValueError, ValidationError, InvalidKeyMaterial) as e:
            raise RegistryError(f"Malformed registry response: {e}")

    async def clear(self, owner: str) -> None:
        try:
            response = await self.http_client.delete(f"{self.server_url}/api/session-keys/{owner}")
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to clear session key: {e}")

        if response.status_code not in (200, 204, 404):
            raise RegistryError(f"Registry clear failed: HTTP {response.status_code}")

    async def aclose(self):
        await self.http_client.aclose()


class HttpLedger(Ledger):
    """
    Ledger reached over HTTP.

    Endpoints:
        POST /api/conversations/{id}/messages  {"sender_owner", "sender_address", "ciphertext": hex}
        GET  /api/conversations/{id}/messages  -> {"messages": [...]}
    """

    def __init__(self, server_url: str = "http://localhost:8000", timeout: float = 10.0,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def append(self, conversation_id: str, ciphertext: bytes, sender_owner: str,
                     sender_address: Optional[str] = None) -> None:
        try:
            response = await self.http_client.post(
                f"{self.server_url}/api/conversations/{conversation_id}/messages",
                json={
                    "sender_owner": sender_owner,
                    "sender_address": sender_address or sender_owner,
                    "ciphertext": to_hex(ciphertext)
                }
            )
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to post message: {e}")

        if response.status_code not in (200, 201):
            raise RegistryError(f"Ledger rejected message: HTTP {response.status_code}")

    async def read_all(self, conversation_id: str) -> List[EncryptedMessage]:
        try:
            response = await self.http_client.get(
                f"{self.server_url}/api/conversations/{conversation_id}/messages"
            )
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to read messages: {e}")

        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise RegistryError(f"Ledger read failed: HTTP {response.status_code}")

        try:
            page = LedgerPage.model_validate(response.json())
            return [
                EncryptedMessage(
                    sender_owner=m.sender_owner,
                    sender_address=m.sender_address,
                    ciphertext=from_hex(m.ciphertext),
                    timestamp=m.timestamp
                )
                for m in page.messages
            ]
        except (ValueError, ValidationError, InvalidKeyMaterial) as e:
            raise RegistryError(f"Malformed ledger response: {e}")

    async def aclose(self):
        await self.http_client.aclose()
