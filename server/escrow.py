"""Escrow ledger for the escrow agent platform.

Owns the escrow records and the agent/fee configuration, enforces the
status state machine, and routes funds through a PaymentBackend.

Every write runs under one lock and one SQLite transaction. The payment
happens before commit; if it fails the transaction is rolled back, so a
rejected operation never leaves a partial state change behind. Change
notifications go out to listeners only after commit.
"""

import logging
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Callable

from crypto import normalize_address
from protocol import (
    DEFAULT_AGENT_FEE_PERCENTAGE, MIN_AGENT_FEE_PERCENTAGE, MAX_AGENT_FEE_PERCENTAGE,
    STATE_TRANSITIONS, EscrowStatus, LedgerEvent,
    AuthorizationError, NotFoundError, StateError, ValidationError,
    ONLY_AGENT, ONLY_BUYER, SAME_PARTIES, DEPOSIT_NOT_PENDING, DEPOSIT_WRONG_AMOUNT,
    APPROVE_NOT_DEPOSITED, REJECT_NOT_DEPOSITED, ARCHIVE_ACTIVE, FEE_OUT_OF_RANGE,
)
from server.payments import PaymentBackend, StubBackend

logger = logging.getLogger(__name__)


def calculate_fee(amount: int, fee_percentage: int) -> int:
    """Agent's cut of a deposit. Truncating integer division."""
    return amount * fee_percentage // 100


def calculate_payout(amount: int, fee_percentage: int) -> int:
    """Seller's share of a deposit. Truncating integer division.

    fee + payout can fall short of amount by the truncation remainder;
    that remainder stays in custody.
    """
    return amount * (100 - fee_percentage) // 100


# Largest id SQLite can bind; anything above cannot exist
MAX_ESCROW_ID = 2**63 - 1


def _is_uint(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _address(value: str, field: str) -> str:
    try:
        return normalize_address(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {field} address: {e}") from None


@dataclass
class EscrowRecord:
    """A single buyer/seller transaction. Only status and updated_at ever change."""
    id: int
    seller: str
    buyer: str
    deposit_amount: int  # wei
    status: EscrowStatus
    agent_fee_percentage: int
    description: str
    created_at: int
    updated_at: int

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = int(self.status)
        d["status_name"] = self.status.name
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "EscrowRecord":
        return cls(
            id=int(data["id"]),
            seller=data["seller"],
            buyer=data["buyer"],
            deposit_amount=int(data["deposit_amount"]),
            status=EscrowStatus(int(data["status"])),
            agent_fee_percentage=int(data["agent_fee_percentage"]),
            description=data.get("description", ""),
            created_at=int(data["created_at"]),
            updated_at=int(data["updated_at"]),
        )


@dataclass(frozen=True)
class LedgerState:
    """Ledger-wide configuration and balances, loaded fresh for every operation."""
    agent: str
    agent_fee_percentage: int
    withdrawable_funds: int  # wei owed to the agent

    def to_dict(self) -> dict:
        return asdict(self)


def require_agent(state: LedgerState, caller: str):
    if caller.lower() != state.agent:
        raise AuthorizationError(ONLY_AGENT)


def advance(record: EscrowRecord, new_status: EscrowStatus, message: str, now: int) -> EscrowRecord:
    """Return record moved to new_status, or raise StateError(message)."""
    if new_status not in STATE_TRANSITIONS[record.status]:
        raise StateError(message)
    return replace(record, status=new_status, updated_at=now)


class EscrowLedger:
    """SQLite-backed escrow ledger with pluggable payment backend."""

    def __init__(self, db_path: str = ":memory:", deployer: str = "",
                 agent_fee_percentage: int = DEFAULT_AGENT_FEE_PERCENTAGE,
                 payment_backend: PaymentBackend | None = None,
                 clock: Callable[[], float] = time.time):
        self.payment = payment_backend or StubBackend()
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._clock = clock
        self._listeners: list[Callable[[dict], None]] = []
        self._init_db(deployer, agent_fee_percentage)

    def _init_db(self, deployer: str, agent_fee_percentage: int):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS escrows (
                id INTEGER PRIMARY KEY,
                seller TEXT NOT NULL,
                buyer TEXT NOT NULL,
                deposit_amount TEXT NOT NULL,
                status INTEGER NOT NULL DEFAULT 0,
                agent_fee_percentage INTEGER NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS ledger_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                agent TEXT NOT NULL,
                agent_fee_percentage INTEGER NOT NULL,
                withdrawable_funds TEXT NOT NULL DEFAULT '0'
            )
        """)
        self.db.commit()

        # An existing ledger keeps its agent; the deployer only seeds a new one
        row = self.db.execute("SELECT id FROM ledger_state WHERE id = 1").fetchone()
        if row:
            return
        if not deployer:
            raise ValueError("A deployer address is required to create a new ledger")
        if not _is_uint(agent_fee_percentage) or agent_fee_percentage > MAX_AGENT_FEE_PERCENTAGE:
            raise ValueError(f"Initial agent fee must be 0-{MAX_AGENT_FEE_PERCENTAGE}, got {agent_fee_percentage}")
        self.db.execute(
            "INSERT INTO ledger_state (id, agent, agent_fee_percentage, withdrawable_funds) VALUES (1, ?, ?, '0')",
            (normalize_address(deployer), agent_fee_percentage),
        )
        self.db.commit()
        logger.info("ledger deployed: agent=%s fee=%d%%", normalize_address(deployer), agent_fee_percentage)

    # --- Listeners ---

    def add_listener(self, listener: Callable[[dict], None]):
        """Register a callable that receives every change notification."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[dict], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: LedgerEvent, timestamp: int, **data):
        payload = {"event": event.value, "timestamp": timestamp, **data}
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                # The write is already committed; a broken listener can't undo it
                logger.exception("listener failed on %s", event.value)

    # --- Internal helpers ---

    def _now(self) -> int:
        return int(self._clock())

    def _load_state(self) -> LedgerState:
        row = self.db.execute("SELECT * FROM ledger_state WHERE id = 1").fetchone()
        return LedgerState(
            agent=row["agent"],
            agent_fee_percentage=row["agent_fee_percentage"],
            withdrawable_funds=int(row["withdrawable_funds"]),
        )

    def _save_state(self, state: LedgerState):
        self.db.execute(
            "UPDATE ledger_state SET agent = ?, agent_fee_percentage = ?, withdrawable_funds = ? WHERE id = 1",
            (state.agent, state.agent_fee_percentage, str(state.withdrawable_funds)),
        )

    def _load_record(self, escrow_id: int) -> EscrowRecord:
        if not _is_uint(escrow_id) or escrow_id > MAX_ESCROW_ID:
            raise NotFoundError(f"No escrow with id {escrow_id}")
        row = self.db.execute("SELECT * FROM escrows WHERE id = ?", (escrow_id,)).fetchone()
        if not row:
            raise NotFoundError(f"No escrow with id {escrow_id}")
        return self._row_to_record(row)

    def _save_status(self, record: EscrowRecord):
        self.db.execute(
            "UPDATE escrows SET status = ?, updated_at = ? WHERE id = ?",
            (int(record.status), record.updated_at, record.id),
        )

    def _commit_or_rollback(self, move_funds: Callable[[], str | None]) -> str | None:
        """Run the payment for a staged write, then commit. Roll back if it fails."""
        try:
            tx_hash = move_funds()
            self.db.commit()
            return tx_hash
        except Exception:
            self.db.rollback()
            raise

    def _row_to_record(self, row) -> EscrowRecord:
        return EscrowRecord(
            id=row["id"],
            seller=row["seller"],
            buyer=row["buyer"],
            deposit_amount=int(row["deposit_amount"]),
            status=EscrowStatus(row["status"]),
            agent_fee_percentage=row["agent_fee_percentage"],
            description=row["description"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # --- Writes ---

    def initiate(self, caller: str, seller: str, buyer: str, amount: int,
                 description: str = "") -> int:
        """Create a PENDING escrow at the current ledger fee. Returns its id."""
        with self._lock:
            state = self._load_state()
            require_agent(state, caller)
            seller = _address(seller, "seller")
            buyer = _address(buyer, "buyer")
            if seller == buyer:
                raise ValidationError(SAME_PARTIES)
            # Zero is accepted: a zero-value escrow is constructible
            if not _is_uint(amount):
                raise ValidationError(f"Deposit amount must be a non-negative integer (wei), got {amount!r}")

            now = self._now()
            escrow_id = self.db.execute("SELECT COUNT(*) AS n FROM escrows").fetchone()["n"]
            self.db.execute(
                "INSERT INTO escrows (id, seller, buyer, deposit_amount, status, agent_fee_percentage, "
                "description, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (escrow_id, seller, buyer, str(amount), int(EscrowStatus.PENDING),
                 state.agent_fee_percentage, description or "", now, now),
            )
            self.db.commit()
            logger.info("escrow %d initiated: seller=%s buyer=%s amount=%d fee=%d%%",
                        escrow_id, seller, buyer, amount, state.agent_fee_percentage)
        self._emit(LedgerEvent.ESCROW_INITIATED, now, id=escrow_id)
        return escrow_id

    def deposit(self, caller: str, escrow_id: int, value: int) -> EscrowRecord:
        """Buyer pays exactly deposit_amount into custody. PENDING -> DEPOSITED."""
        with self._lock:
            record = self._load_record(escrow_id)
            if caller.lower() != record.buyer:
                raise AuthorizationError(ONLY_BUYER)
            now = self._now()
            updated = advance(record, EscrowStatus.DEPOSITED, DEPOSIT_NOT_PENDING, now)
            if not _is_uint(value) or value != record.deposit_amount:
                raise ValidationError(DEPOSIT_WRONG_AMOUNT)

            self._save_status(updated)
            self._commit_or_rollback(
                lambda: self.payment.collect(record.id, record.buyer, value)
            )
            logger.info("escrow %d deposited: %d wei from %s", record.id, value, record.buyer)
        self._emit(LedgerEvent.ESCROW_DEPOSITED, now, id=record.id)
        return updated

    def approve(self, caller: str, escrow_id: int) -> EscrowRecord:
        """Release a deposit to the seller minus the agent fee. DEPOSITED -> APPROVED."""
        with self._lock:
            state = self._load_state()
            require_agent(state, caller)
            record = self._load_record(escrow_id)
            now = self._now()
            updated = advance(record, EscrowStatus.APPROVED, APPROVE_NOT_DEPOSITED, now)

            fee = calculate_fee(record.deposit_amount, record.agent_fee_percentage)
            payout = calculate_payout(record.deposit_amount, record.agent_fee_percentage)
            self._save_status(updated)
            self._save_state(replace(state, withdrawable_funds=state.withdrawable_funds + fee))
            self._commit_or_rollback(
                lambda: self.payment.send(record.id, record.seller, payout)
            )
            logger.info("escrow %d approved: fee=%d payout=%d to %s",
                        record.id, fee, payout, record.seller)
        self._emit(LedgerEvent.ESCROW_APPROVED, now, id=record.id)
        return updated

    def reject(self, caller: str, escrow_id: int) -> EscrowRecord:
        """Refund the full deposit to the buyer. DEPOSITED -> REJECTED."""
        with self._lock:
            state = self._load_state()
            require_agent(state, caller)
            record = self._load_record(escrow_id)
            now = self._now()
            updated = advance(record, EscrowStatus.REJECTED, REJECT_NOT_DEPOSITED, now)

            self._save_status(updated)
            self._commit_or_rollback(
                lambda: self.payment.send(record.id, record.buyer, record.deposit_amount)
            )
            logger.info("escrow %d rejected: refunded %d to %s",
                        record.id, record.deposit_amount, record.buyer)
        self._emit(LedgerEvent.ESCROW_REJECTED, now, id=record.id)
        return updated

    def archive(self, caller: str, escrow_id: int) -> EscrowRecord:
        """Retire an unfunded escrow. PENDING -> ARCHIVED, no funds move."""
        with self._lock:
            state = self._load_state()
            require_agent(state, caller)
            record = self._load_record(escrow_id)
            now = self._now()
            updated = advance(record, EscrowStatus.ARCHIVED, ARCHIVE_ACTIVE, now)

            self._save_status(updated)
            self.db.commit()
            logger.info("escrow %d archived", record.id)
        self._emit(LedgerEvent.ESCROW_ARCHIVED, now, id=record.id)
        return updated

    def change_agent(self, caller: str, new_agent: str) -> str:
        with self._lock:
            state = self._load_state()
            require_agent(state, caller)
            new_agent = _address(new_agent, "agent")
            self._save_state(replace(state, agent=new_agent))
            self.db.commit()
            now = self._now()
            logger.info("agent changed: %s -> %s", state.agent, new_agent)
        self._emit(LedgerEvent.AGENT_CHANGED, now, agent=new_agent)
        return new_agent

    def change_agent_fee_percentage(self, caller: str, new_fee: int) -> int:
        """Set the fee for escrows created from now on. Existing records keep theirs."""
        with self._lock:
            state = self._load_state()
            require_agent(state, caller)
            if not _is_uint(new_fee) or not (MIN_AGENT_FEE_PERCENTAGE <= new_fee <= MAX_AGENT_FEE_PERCENTAGE):
                raise ValidationError(FEE_OUT_OF_RANGE)
            self._save_state(replace(state, agent_fee_percentage=new_fee))
            self.db.commit()
            now = self._now()
            logger.info("agent fee changed: %d%% -> %d%%", state.agent_fee_percentage, new_fee)
        self._emit(LedgerEvent.AGENT_FEE_CHANGED, now, agent_fee_percentage=new_fee)
        return new_fee

    def withdraw_funds(self, caller: str) -> int:
        """Pay all accrued fees to the agent. A zero balance withdraws nothing."""
        with self._lock:
            state = self._load_state()
            require_agent(state, caller)
            amount = state.withdrawable_funds
            self._save_state(replace(state, withdrawable_funds=0))
            self._commit_or_rollback(
                lambda: self.payment.send(None, state.agent, amount) if amount else None
            )
            now = self._now()
            logger.info("agent %s withdrew %d wei", state.agent, amount)
        self._emit(LedgerEvent.FUNDS_WITHDRAWN, now, amount=amount)
        return amount

    # --- Reads ---

    # Reads share the write lock: the connection would otherwise show a
    # staged, uncommitted write to a concurrent reader.

    def get_all_escrows(self) -> list[EscrowRecord]:
        with self._lock:
            rows = self.db.execute("SELECT * FROM escrows ORDER BY id").fetchall()
        return [self._row_to_record(r) for r in rows]

    def get_escrow_by_id(self, escrow_id: int) -> EscrowRecord:
        with self._lock:
            return self._load_record(escrow_id)

    def state(self) -> LedgerState:
        with self._lock:
            return self._load_state()

    def agent(self) -> str:
        return self.state().agent

    def agent_fee_percentage(self) -> int:
        return self.state().agent_fee_percentage

    def withdrawable_funds(self) -> int:
        return self.state().withdrawable_funds

    def custody_balance(self) -> int:
        with self._lock:
            return self.payment.custody_balance()

    def close(self):
        self.db.close()
