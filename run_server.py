#!/usr/bin/env python3
"""Escrow agent ledger server.

The deployer key is read from ESCROW_AGENT_KEY (created on first run); its
address becomes the agent of a freshly created ledger. With simulated
payments (the default) balances persist next to the ledger database and
POST /faucet funds accounts so buyers can deposit.
"""

import os, sys, logging
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from server.app import create_app
from server.escrow import EscrowLedger
from server.payments import SimBackend, StubBackend
from crypto import (
    generate_ed25519_keypair, load_ed25519_key, save_ed25519_key, privkey_to_address,
)
from protocol import DEFAULT_AGENT_FEE_PERCENTAGE, eth_to_wei

DB_PATH = os.environ.get("ESCROW_DB", "escrow.db")
PORT = int(os.environ.get("ESCROW_PORT", "8000"))
AGENT_KEY_PATH = os.path.expanduser(os.environ.get("ESCROW_AGENT_KEY", "~/.escrow/agent.key"))
AGENT_FEE = int(os.environ.get("ESCROW_AGENT_FEE", str(DEFAULT_AGENT_FEE_PERCENTAGE)))
PAYMENTS = os.environ.get("ESCROW_PAYMENTS", "sim")
PAYMENTS_DB = os.environ.get("ESCROW_PAYMENTS_DB", "")  # default: beside DB_PATH
FAUCET_ETH = os.environ.get("ESCROW_FAUCET_ETH", "10")
LOG_LEVEL = os.environ.get("ESCROW_LOG_LEVEL", "INFO")


def load_or_create_agent_key(path):
    if os.path.exists(path):
        return load_ed25519_key(path)
    key_dir = os.path.dirname(path)
    if key_dir:
        os.makedirs(key_dir, exist_ok=True)
    priv, _ = generate_ed25519_keypair()
    save_ed25519_key(path, priv)
    print(f"[server] Created agent key at {path}")
    return priv


def payments_db_for(db_path):
    """escrow.db -> escrow_payments.db, so custody survives a restart with the ledger."""
    if db_path == ":memory:":
        return db_path
    return os.path.splitext(db_path)[0] + "_payments.db"


def make_payment_backend(kind=PAYMENTS, db_path=None):
    if kind == "stub":
        return StubBackend()
    if kind == "sim":
        return SimBackend(db_path=db_path or ":memory:")
    raise ValueError(f"ESCROW_PAYMENTS must be 'sim' or 'stub', got {kind!r}")


def build_app(db_path=DB_PATH, key_path=AGENT_KEY_PATH, payments=PAYMENTS,
              payments_db=PAYMENTS_DB, agent_fee=AGENT_FEE, faucet_eth=FAUCET_ETH):
    """Open (or deploy) the ledger and wrap it in the HTTP app."""
    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    deployer = privkey_to_address(load_or_create_agent_key(key_path))
    payment = make_payment_backend(payments, payments_db or payments_db_for(db_path))
    ledger = EscrowLedger(db_path, deployer=deployer, agent_fee_percentage=agent_fee,
                          payment_backend=payment)
    faucet_amount = eth_to_wei(faucet_eth) if payments == "sim" else 0
    return create_app(ledger=ledger, faucet_amount=faucet_amount)


def main():
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        app = build_app()
    except ValueError as e:
        print(f"Cannot open ledger: {e}", file=sys.stderr)
        sys.exit(1)

    ledger = app.state.ledger
    deployer = privkey_to_address(load_ed25519_key(AGENT_KEY_PATH))
    print(f"[server] Ledger at {DB_PATH} (agent: {ledger.agent()}, fee: {ledger.agent_fee_percentage()}%)")
    if ledger.agent() != deployer:
        print(f"[server] Note: agent key {deployer} is no longer the ledger agent")
    print(f"[server] Payments: {PAYMENTS} (custody: {ledger.payment.custody_account})")
    if PAYMENTS == "sim":
        print(f"[server] Faucet: {FAUCET_ETH} ETH per POST /faucet")
    print(f"[server] Listening on :{PORT}")

    uvicorn.run(app, host="0.0.0.0", port=PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
