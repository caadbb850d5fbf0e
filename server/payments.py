"""Payment backends for the escrow ledger.

The ledger never moves money itself. It asks a PaymentBackend to pull a
buyer's deposit into custody and to pay sellers, buyers and the agent out of
it. Amounts are integers in wei throughout.

StubBackend records calls and always succeeds. SimBackend keeps real
balances in SQLite, so tests and local runs can check that funds add up.
"""

import hashlib
import sqlite3
import threading
import time
from abc import ABC, abstractmethod

from protocol import PaymentError, wei_to_eth


ZERO_AMOUNT_HASH = "noop_zero_amount"


class PaymentBackend(ABC):
    """Abstract payment backend. Injected into EscrowLedger."""

    custody_account: str = ""

    @abstractmethod
    def collect(self, escrow_id: int, from_account: str, amount: int) -> str:
        """Move amount from a payer into ledger custody. Returns tx hash."""
        ...

    @abstractmethod
    def send(self, escrow_id: int | None, to_account: str, amount: int) -> str:
        """Move amount out of ledger custody to to_account. Returns tx hash.

        escrow_id is None for transfers not tied to one escrow (agent withdrawal).
        """
        ...

    @abstractmethod
    def get_balance(self, address: str) -> int:
        """Balance of any account in wei."""
        ...

    def custody_balance(self) -> int:
        """Funds currently held by the ledger."""
        return self.get_balance(self.custody_account)


class StubBackend(PaymentBackend):
    """No-op backend for testing. All operations succeed immediately."""

    custody_account = "0x" + "00" * 20

    def __init__(self):
        self.collections: list[dict] = []
        self.sends: list[dict] = []  # log of sends for test assertions

    def collect(self, escrow_id: int, from_account: str, amount: int) -> str:
        self.collections.append({
            "escrow_id": escrow_id,
            "from": from_account,
            "amount": amount,
        })
        return f"stub_collect_{len(self.collections)}"

    def send(self, escrow_id: int | None, to_account: str, amount: int) -> str:
        self.sends.append({
            "escrow_id": escrow_id,
            "to": to_account,
            "amount": amount,
        })
        return f"stub_hash_{len(self.sends)}"

    def get_balance(self, address: str) -> int:
        if address != self.custody_account:
            return 0
        collected = sum(c["amount"] for c in self.collections)
        sent = sum(s["amount"] for s in self.sends)
        return collected - sent


class SimBackend(PaymentBackend):
    """Simulated payment backend for development/integration testing.

    Tracks real balances in SQLite. Enforces:
    - Insufficient balance errors (no overdrafts, custody included)
    - Zero-amount transfers are no-ops
    - Full transaction log with deterministic hashes

    Usage:
        sim = SimBackend()
        sim.fund("0x...buyer", 5 * WEI_PER_ETH)
        sim.collect(0, "0x...buyer", 5 * WEI_PER_ETH)  # buyer deposits
        sim.send(0, "0x...seller", 4 * WEI_PER_ETH)     # pay the seller
    """

    def __init__(self, seed: str | None = None, db_path: str = ":memory:"):
        self._seed_bytes = bytes.fromhex(seed or "aa" * 32)
        self.custody_account = "0x" + hashlib.blake2b(
            self._seed_bytes, digest_size=20
        ).hexdigest()

        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()
        row = self._db.execute("SELECT COUNT(*) AS n FROM sim_transactions").fetchone()
        self._tx_counter = row["n"]

    def _init_db(self):
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_accounts (
                address TEXT PRIMARY KEY,
                balance_wei TEXT NOT NULL DEFAULT '0'
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                from_account TEXT NOT NULL,
                to_account TEXT NOT NULL,
                amount_wei TEXT NOT NULL,
                escrow_id INTEGER,
                tx_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        """)
        self._db.commit()

    def _get_balance_wei(self, address: str) -> int:
        row = self._db.execute(
            "SELECT balance_wei FROM sim_accounts WHERE address = ?",
            (address,),
        ).fetchone()
        return int(row["balance_wei"]) if row else 0

    def _set_balance_wei(self, address: str, wei: int):
        """Set balance in wei, creating account if needed."""
        self._db.execute(
            "INSERT INTO sim_accounts (address, balance_wei) VALUES (?, ?) "
            "ON CONFLICT(address) DO UPDATE SET balance_wei = ?",
            (address, str(wei), str(wei)),
        )

    def _record_tx(self, from_acc: str, to_acc: str, wei: int,
                   escrow_id: int | None, tx_type: str) -> str:
        """Record a transaction and return its hash."""
        self._tx_counter += 1
        tx_hash = "0x" + hashlib.blake2b(
            f"{self._tx_counter}:{from_acc}:{to_acc}:{wei}".encode(),
            digest_size=32,
        ).hexdigest()
        self._db.execute(
            "INSERT INTO sim_transactions (hash, from_account, to_account, "
            "amount_wei, escrow_id, tx_type, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (tx_hash, from_acc, to_acc, str(wei), escrow_id, tx_type, time.time()),
        )
        return tx_hash

    def _transfer(self, from_acc: str, to_acc: str, amount: int,
                  escrow_id: int | None, tx_type: str) -> str:
        if amount < 0:
            raise PaymentError(f"Negative transfer amount: {amount}")
        if amount == 0:
            return ZERO_AMOUNT_HASH

        with self._lock:
            balance = self._get_balance_wei(from_acc)
            if balance < amount:
                raise PaymentError(
                    f"Insufficient balance: {from_acc} has {wei_to_eth(balance)} ETH, "
                    f"needs {wei_to_eth(amount)} ETH"
                )
            # Atomic transfer
            self._set_balance_wei(from_acc, balance - amount)
            to_balance = self._get_balance_wei(to_acc)
            self._set_balance_wei(to_acc, to_balance + amount)
            tx_hash = self._record_tx(from_acc, to_acc, amount, escrow_id, tx_type)
            self._db.commit()
            return tx_hash

    # --- PaymentBackend interface ---

    def collect(self, escrow_id: int, from_account: str, amount: int) -> str:
        return self._transfer(from_account, self.custody_account, amount,
                              escrow_id, "deposit")

    def send(self, escrow_id: int | None, to_account: str, amount: int) -> str:
        return self._transfer(self.custody_account, to_account, amount,
                              escrow_id, "send")

    def get_balance(self, address: str) -> int:
        with self._lock:
            return self._get_balance_wei(address)

    # --- SimBackend-only methods (for test setup) ---

    def fund(self, address: str, amount: int):
        """Credit an account with funds (simulates an external faucet)."""
        with self._lock:
            balance = self._get_balance_wei(address)
            self._set_balance_wei(address, balance + amount)
            self._record_tx("faucet", address, amount, None, "fund")
            self._db.commit()

    def get_transactions(self, escrow_id: int | None = None) -> list[dict]:
        """Get transaction log, optionally filtered by escrow."""
        with self._lock:
            if escrow_id is not None:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions WHERE escrow_id = ? ORDER BY id",
                    (escrow_id,),
                ).fetchall()
            else:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions ORDER BY id"
                ).fetchall()
            return [dict(r) for r in rows]

    def close(self):
        self._db.close()
