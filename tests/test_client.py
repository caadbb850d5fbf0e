"""Tests for client.py against a mock transport."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import json
import httpx
import pytest
from client import (
    EscrowClient, Ed25519Signer, SigningProvider, Transport, HTTPTransport,
    raise_for_ledger_error,
)
from crypto import verify_request_ed25519, HEADER_TIMESTAMP, HEADER_SIGNATURE, HEADER_PUBKEY
from protocol import LedgerError, AuthorizationError, StateError, NotFoundError
from conftest import AGENT, AGENT_PRIV, AGENT_PUB_HEX, SELLER, BUYER


ESCROW = {
    "id": 0, "seller": SELLER, "buyer": BUYER, "deposit_amount": 5, "status": 0,
    "status_name": "PENDING", "agent_fee_percentage": 10, "description": "",
    "created_at": 1, "updated_at": 1,
}


class MockTransport(Transport):
    def __init__(self):
        self.calls = []

    async def post(self, path, data):
        self.calls.append(("POST", path, data))
        if path == "/escrows":
            return {"id": 0, "escrow": ESCROW}
        if path.startswith("/escrows/"):
            return {"escrow": ESCROW}
        if path == "/agent":
            return {"agent": data["new_agent"]}
        if path == "/agent_fee_percentage":
            return {"agent_fee_percentage": data["new_fee"]}
        if path == "/withdraw":
            return {"withdrawn": 7}
        if path == "/faucet":
            return {"address": AGENT, "funded": 10, "balance": 10}
        return {}

    async def get(self, path, params=None):
        self.calls.append(("GET", path, params))
        if path == "/escrows":
            return {"escrows": [ESCROW]}
        if path == "/agent":
            return {"agent": AGENT}
        if path == "/agent_fee_percentage":
            return {"agent_fee_percentage": 10}
        if path == "/withdrawable_funds":
            return {"withdrawable_funds": 3}
        if path == "/ledger_info":
            return {"agent": AGENT, "protocol_version": 1}
        return ESCROW


@pytest.fixture
def mock_transport():
    return MockTransport()


@pytest.fixture
def escrow_client(mock_transport):
    return EscrowClient(transport=mock_transport, signer=Ed25519Signer(AGENT_PRIV))


# --- Interfaces ---

def test_transport_is_abstract():
    with pytest.raises(TypeError):
        Transport()


def test_signing_provider_is_abstract():
    with pytest.raises(TypeError):
        SigningProvider()


def test_signer_address():
    signer = Ed25519Signer(AGENT_PRIV)
    assert signer.address == AGENT
    assert signer.pubkey_hex == AGENT_PUB_HEX


def test_client_address_from_signer(escrow_client):
    assert escrow_client.address == AGENT
    assert EscrowClient(transport=MockTransport()).address == ""


# --- Reads ---

@pytest.mark.asyncio
async def test_get_all_escrows(escrow_client, mock_transport):
    assert await escrow_client.get_all_escrows() == [ESCROW]
    assert mock_transport.calls[-1] == ("GET", "/escrows", None)


@pytest.mark.asyncio
async def test_get_escrow_by_id(escrow_client, mock_transport):
    assert (await escrow_client.get_escrow_by_id(0))["id"] == 0
    assert mock_transport.calls[-1] == ("GET", "/escrows/0", None)


@pytest.mark.asyncio
async def test_scalar_reads(escrow_client, mock_transport):
    assert await escrow_client.agent() == AGENT
    assert await escrow_client.agent_fee_percentage() == 10
    assert await escrow_client.withdrawable_funds() == 3
    assert (await escrow_client.ledger_info())["protocol_version"] == 1
    assert [c[1] for c in mock_transport.calls] == [
        "/agent", "/agent_fee_percentage", "/withdrawable_funds", "/ledger_info",
    ]


# --- Writes ---

@pytest.mark.asyncio
async def test_initiate(escrow_client, mock_transport):
    eid = await escrow_client.initiate(SELLER, BUYER, 5, "bike")
    assert eid == 0
    assert mock_transport.calls[-1] == (
        "POST", "/escrows",
        {"seller": SELLER, "buyer": BUYER, "amount": 5, "description": "bike"},
    )


@pytest.mark.asyncio
async def test_deposit(escrow_client, mock_transport):
    await escrow_client.deposit(0, 5)
    assert mock_transport.calls[-1] == ("POST", "/escrows/0/deposit", {"value": 5})


@pytest.mark.asyncio
async def test_status_writes(escrow_client, mock_transport):
    await escrow_client.approve(1)
    await escrow_client.reject(2)
    await escrow_client.archive(3)
    assert mock_transport.calls == [
        ("POST", "/escrows/1/approve", {}),
        ("POST", "/escrows/2/reject", {}),
        ("POST", "/escrows/3/archive", {}),
    ]


@pytest.mark.asyncio
async def test_agent_writes(escrow_client, mock_transport):
    assert await escrow_client.change_agent(SELLER) == SELLER
    assert await escrow_client.change_agent_fee_percentage(42) == 42
    assert await escrow_client.withdraw_funds() == 7
    assert mock_transport.calls == [
        ("POST", "/agent", {"new_agent": SELLER}),
        ("POST", "/agent_fee_percentage", {"new_fee": 42}),
        ("POST", "/withdraw", {}),
    ]


@pytest.mark.asyncio
async def test_faucet(escrow_client, mock_transport):
    assert (await escrow_client.faucet())["balance"] == 10
    assert mock_transport.calls[-1] == ("POST", "/faucet", {})


# --- Error mapping ---

def test_raise_for_ledger_error_maps_class():
    with pytest.raises(StateError, match="deposited status") as ctx:
        raise_for_ledger_error(409, {"detail": "You can only approve Escrow with deposited status",
                                     "error": "StateError"})
    assert ctx.value.status_code == 409


def test_raise_for_ledger_error_unknown_class():
    with pytest.raises(LedgerError) as ctx:
        raise_for_ledger_error(400, {"detail": "odd", "error": "SomethingElse"})
    assert type(ctx.value) is LedgerError


def _response(status_code, payload):
    return httpx.Response(status_code, json=payload,
                          request=httpx.Request("POST", "http://localhost:8000/escrows"))


def test_handle_maps_ledger_errors():
    with pytest.raises(AuthorizationError):
        HTTPTransport._handle(_response(403, {"detail": "Only Agent can call this function",
                                              "error": "AuthorizationError"}))
    with pytest.raises(NotFoundError):
        HTTPTransport._handle(_response(404, {"detail": "No escrow with id 9",
                                              "error": "NotFoundError"}))


def test_handle_plain_http_error():
    with pytest.raises(httpx.HTTPStatusError):
        HTTPTransport._handle(_response(401, {"detail": "Replay detected"}))


def test_handle_success():
    assert HTTPTransport._handle(_response(200, {"agent": AGENT})) == {"agent": AGENT}


# --- HTTPTransport ---

def test_http_transport_default():
    t = HTTPTransport()
    assert t.base_url == "http://localhost:8000"
    assert t.signer is None
    assert t.timeout == 30.0
    assert t.http_transport is None


def test_http_transport_strips_trailing_slash():
    t = HTTPTransport(base_url="http://example.com/")
    assert t.base_url == "http://example.com"


def test_http_transport_signs_posts():
    t = HTTPTransport(signer=Ed25519Signer(AGENT_PRIV))
    headers = t._headers("POST", "/withdraw", "{}")
    ok, err = verify_request_ed25519(
        "POST", "/withdraw", "{}",
        headers[HEADER_TIMESTAMP], headers[HEADER_SIGNATURE], headers[HEADER_PUBKEY],
    )
    assert ok, err


def test_http_transport_does_not_sign_gets():
    t = HTTPTransport(signer=Ed25519Signer(AGENT_PRIV))
    assert HEADER_SIGNATURE not in t._headers("GET", "/escrows")


def test_client_builds_signed_transport():
    signer = Ed25519Signer(AGENT_PRIV)
    c = EscrowClient(base_url="http://ledger:9000", signer=signer)
    assert isinstance(c.transport, HTTPTransport)
    assert c.transport.base_url == "http://ledger:9000"
    assert c.transport.signer is signer


@pytest.mark.asyncio
async def test_http_transport_posts_carry_fresh_nonce():
    seen = []

    def handler(request):
        body = request.content.decode()
        ok, err = verify_request_ed25519(
            "POST", request.url.path, body, request.headers[HEADER_TIMESTAMP],
            request.headers[HEADER_SIGNATURE], request.headers[HEADER_PUBKEY],
        )
        assert ok, err
        seen.append((json.loads(body), request.headers[HEADER_SIGNATURE]))
        return httpx.Response(200, json={"withdrawn": 0})

    t = HTTPTransport(signer=Ed25519Signer(AGENT_PRIV), http_transport=httpx.MockTransport(handler))
    await t.post("/withdraw", {})
    await t.post("/withdraw", {})
    (first, sig1), (second, sig2) = seen
    assert first["nonce"] != second["nonce"]
    assert sig1 != sig2
