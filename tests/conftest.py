import sys
import os
import json

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from crypto import generate_ed25519_keypair, pubkey_to_address, sign_request_ed25519
from protocol import DEFAULT_AGENT_FEE_PERCENTAGE, WEI_PER_ETH
from server.escrow import EscrowLedger
from server.payments import SimBackend, StubBackend


# Pre-generated test keypairs, one per role
AGENT_PRIV, _AGENT_PUB = generate_ed25519_keypair()
SELLER_PRIV, _SELLER_PUB = generate_ed25519_keypair()
BUYER_PRIV, _BUYER_PUB = generate_ed25519_keypair()
OUTSIDER_PRIV, _OUTSIDER_PUB = generate_ed25519_keypair()

AGENT_PUB_HEX = _AGENT_PUB.hex()
SELLER_PUB_HEX = _SELLER_PUB.hex()
BUYER_PUB_HEX = _BUYER_PUB.hex()
OUTSIDER_PUB_HEX = _OUTSIDER_PUB.hex()

AGENT = pubkey_to_address(_AGENT_PUB)
SELLER = pubkey_to_address(_SELLER_PUB)
BUYER = pubkey_to_address(_BUYER_PUB)
OUTSIDER = pubkey_to_address(_OUTSIDER_PUB)

ETH = WEI_PER_ETH
BUYER_FUNDS = 100 * ETH
START_TIME = 1_700_000_000


class FakeClock:
    """Deterministic clock for the ledger: advances only when told to."""

    def __init__(self, now: int = START_TIME):
        self.now = now

    def __call__(self):
        return self.now

    def tick(self, seconds: int = 1):
        self.now += seconds


def make_ledger(fee=DEFAULT_AGENT_FEE_PERCENTAGE, sim=True, clock=None, db_path=":memory:"):
    """In-memory ledger deployed by AGENT. SimBackend buyers start with BUYER_FUNDS."""
    if sim:
        payment = SimBackend()
        payment.fund(BUYER, BUYER_FUNDS)
    else:
        payment = StubBackend()
    return EscrowLedger(
        db_path, deployer=AGENT, agent_fee_percentage=fee,
        payment_backend=payment, clock=clock or FakeClock(),
    )


# Monotonic counter so two identical requests in the same second still
# carry different signatures (the replay guard would refuse the second).
_nonce_counter = 0


def signed_post(client, path, data, pub_hex, privkey_bytes):
    """Make an Ed25519-signed POST request for tests.

    The nonce rides along in the body; request models ignore unknown fields.
    """
    global _nonce_counter
    _nonce_counter += 1
    body = json.dumps({**data, "nonce": _nonce_counter})
    auth_headers = sign_request_ed25519(privkey_bytes, pub_hex, "POST", path, body)
    return client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **auth_headers,
    })
