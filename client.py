"""Escrow ledger API client.

Thin HTTP client with a pluggable transport interface.
Default transport: HTTP with Ed25519 request signing.

The signing provider stands in for a browser wallet: it owns the caller's
key, knows the caller's address, and signs every write. It is injected,
never looked up from global state.
"""

import json
import secrets
from abc import ABC, abstractmethod

import httpx

from crypto import (
    sign_request_ed25519, ed25519_privkey_to_pubkey, pubkey_to_address,
)
from protocol import ERROR_TYPES, LedgerError


class SigningProvider(ABC):
    """Signs API requests on behalf of one account."""

    @property
    @abstractmethod
    def address(self) -> str:
        ...

    @abstractmethod
    def sign_request(self, method: str, path: str, body: str = "") -> dict:
        """Return the auth headers for a request."""
        ...


class Ed25519Signer(SigningProvider):
    """Default signing provider backed by a raw Ed25519 private key."""

    def __init__(self, privkey_bytes: bytes):
        self._privkey = privkey_bytes
        pubkey = ed25519_privkey_to_pubkey(privkey_bytes)
        self.pubkey_hex = pubkey.hex()
        self._address = pubkey_to_address(pubkey)

    @property
    def address(self) -> str:
        return self._address

    def sign_request(self, method: str, path: str, body: str = "") -> dict:
        return sign_request_ed25519(self._privkey, self.pubkey_hex, method, path, body)


def raise_for_ledger_error(status_code: int, payload: dict):
    """Turn an error response back into the exception the ledger raised."""
    detail = payload.get("detail", "") if isinstance(payload, dict) else str(payload)
    if not isinstance(detail, str):
        detail = json.dumps(detail)
    error_cls = ERROR_TYPES.get(payload.get("error", "") if isinstance(payload, dict) else "")
    if error_cls is None:
        error_cls = LedgerError
    err = error_cls(detail or f"HTTP {status_code}")
    err.status_code = status_code
    raise err


class Transport(ABC):
    """Override this to talk to the ledger some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to the ledger service over HTTP with Ed25519 auth."""

    def __init__(self, base_url: str = "http://localhost:8000",
                 signer: SigningProvider | None = None, timeout: float = 30.0,
                 http_transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.signer = signer
        self.timeout = timeout
        self.http_transport = http_transport  # e.g. httpx.ASGITransport for in-process use

    def _headers(self, method: str = "GET", path: str = "", body: str = "") -> dict:
        h = {"Content-Type": "application/json"}
        if self.signer and method != "GET":
            h.update(self.signer.sign_request(method, path, body))
        return h

    @staticmethod
    def _handle(resp: httpx.Response) -> dict:
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {"detail": resp.text}
            if isinstance(payload, dict) and "error" in payload:
                raise_for_ledger_error(resp.status_code, payload)
            resp.raise_for_status()
        return resp.json()

    async def post(self, path: str, data: dict) -> dict:
        # Signatures are deterministic and single-use: the nonce keeps two
        # identical writes from signing to the same bytes
        body = json.dumps({**data, "nonce": secrets.token_hex(8)})
        async with httpx.AsyncClient(transport=self.http_transport) as client:
            resp = await client.post(
                f"{self.base_url}{path}",
                content=body,
                headers=self._headers("POST", path, body),
                timeout=self.timeout,
            )
            return self._handle(resp)

    async def get(self, path: str, params: dict | None = None) -> dict:
        async with httpx.AsyncClient(transport=self.http_transport) as client:
            resp = await client.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers("GET", path),
                timeout=self.timeout,
            )
            return self._handle(resp)


class EscrowClient:
    """High-level client for the escrow ledger."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000",
                 signer: SigningProvider | None = None):
        self.signer = signer
        self.address = signer.address if signer else ""
        if transport:
            self.transport = transport
        else:
            self.transport = HTTPTransport(base_url, signer=signer)

    # --- Reads ---

    async def get_all_escrows(self) -> list[dict]:
        resp = await self.transport.get("/escrows")
        return resp["escrows"]

    async def get_escrow_by_id(self, escrow_id: int) -> dict:
        return await self.transport.get(f"/escrows/{escrow_id}")

    async def agent(self) -> str:
        resp = await self.transport.get("/agent")
        return resp["agent"]

    async def agent_fee_percentage(self) -> int:
        resp = await self.transport.get("/agent_fee_percentage")
        return resp["agent_fee_percentage"]

    async def withdrawable_funds(self) -> int:
        resp = await self.transport.get("/withdrawable_funds")
        return resp["withdrawable_funds"]

    async def ledger_info(self) -> dict:
        return await self.transport.get("/ledger_info")

    # --- Writes ---

    async def initiate(self, seller: str, buyer: str, amount: int, description: str = "") -> int:
        """Open an escrow (agent only). Returns the new escrow id."""
        resp = await self.transport.post("/escrows", {
            "seller": seller,
            "buyer": buyer,
            "amount": amount,
            "description": description,
        })
        return resp["id"]

    async def deposit(self, escrow_id: int, value: int) -> dict:
        """Pay value (wei) into a pending escrow (buyer only)."""
        resp = await self.transport.post(f"/escrows/{escrow_id}/deposit", {"value": value})
        return resp["escrow"]

    async def approve(self, escrow_id: int) -> dict:
        resp = await self.transport.post(f"/escrows/{escrow_id}/approve", {})
        return resp["escrow"]

    async def reject(self, escrow_id: int) -> dict:
        resp = await self.transport.post(f"/escrows/{escrow_id}/reject", {})
        return resp["escrow"]

    async def archive(self, escrow_id: int) -> dict:
        resp = await self.transport.post(f"/escrows/{escrow_id}/archive", {})
        return resp["escrow"]

    async def change_agent(self, new_agent: str) -> str:
        resp = await self.transport.post("/agent", {"new_agent": new_agent})
        return resp["agent"]

    async def change_agent_fee_percentage(self, new_fee: int) -> int:
        resp = await self.transport.post("/agent_fee_percentage", {"new_fee": new_fee})
        return resp["agent_fee_percentage"]

    async def withdraw_funds(self) -> int:
        resp = await self.transport.post("/withdraw", {})
        return resp["withdrawn"]

    async def faucet(self) -> dict:
        """Ask a development server to fund this account (simulated payments)."""
        return await self.transport.post("/faucet", {})

    # --- Change feed ---

    async def stream_events(self, callback=None, events: list[str] | None = None):
        """Subscribe to the ledger's SSE change feed.

        Args:
            callback: async callable(event_dict) called for each event
            events: only receive these event names (default: all)

        Usage:
            async def on_event(event):
                if event["event"] == "escrow_initiated":
                    print(f"New escrow: {event['id']}")

            await client.stream_events(callback=on_event)
        """
        base = self.transport.base_url if hasattr(self.transport, "base_url") else "http://localhost:8000"
        params = {"event": ",".join(events)} if events else None

        async with httpx.AsyncClient() as client:
            async with client.stream("GET", f"{base}/events/stream", params=params, timeout=None) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if line.startswith("data: "):
                        event = json.loads(line[6:])
                        if callback:
                            await callback(event)
