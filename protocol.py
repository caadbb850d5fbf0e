"""Shared constants and interfaces for the escrow agent ledger.

All modules import from here to avoid circular dependencies.
"""

from decimal import Decimal
from enum import Enum, IntEnum

# --- Protocol Constants ---

PROTOCOL_VERSION = 1

DEFAULT_CURRENCY = "ETH"
WEI_PER_ETH = 10**18


def eth_to_wei(amount: str | Decimal) -> int:
    """Convert ETH amount to wei (integer)."""
    result = Decimal(str(amount)) * WEI_PER_ETH
    return int(result.to_integral_value())


def wei_to_eth(wei: int | str) -> Decimal:
    """Convert wei to ETH."""
    return Decimal(str(wei)) / WEI_PER_ETH


# Agent fee: whole percent, captured per escrow at creation time
DEFAULT_AGENT_FEE_PERCENTAGE = 10
MIN_AGENT_FEE_PERCENTAGE = 0
MAX_AGENT_FEE_PERCENTAGE = 99

# Change feed
MAX_SSE_SUBSCRIBERS = 1000
SSE_QUEUE_SIZE = 256
SSE_KEEPALIVE_SECONDS = 15.0


# --- State Machine ---

class EscrowStatus(IntEnum):
    # Integer values match the order clients display and sort by
    PENDING = 0
    DEPOSITED = 1
    APPROVED = 2
    REJECTED = 3
    ARCHIVED = 4


# Valid state transitions: current_state -> set of valid next states
STATE_TRANSITIONS = {
    EscrowStatus.PENDING: {EscrowStatus.DEPOSITED, EscrowStatus.ARCHIVED},
    EscrowStatus.DEPOSITED: {EscrowStatus.APPROVED, EscrowStatus.REJECTED},
    EscrowStatus.APPROVED: set(),
    EscrowStatus.REJECTED: set(),
    EscrowStatus.ARCHIVED: set(),
}

TERMINAL_STATES = {s for s, nxt in STATE_TRANSITIONS.items() if not nxt}


# --- Change Notifications ---

class LedgerEvent(Enum):
    ESCROW_INITIATED = "escrow_initiated"
    ESCROW_DEPOSITED = "escrow_deposited"
    ESCROW_APPROVED = "escrow_approved"
    ESCROW_REJECTED = "escrow_rejected"
    ESCROW_ARCHIVED = "escrow_archived"
    FUNDS_WITHDRAWN = "funds_withdrawn"
    AGENT_CHANGED = "agent_changed"
    AGENT_FEE_CHANGED = "agent_fee_changed"


# Events that refer to a single escrow record (payload carries "id")
ESCROW_EVENTS = {
    LedgerEvent.ESCROW_INITIATED,
    LedgerEvent.ESCROW_DEPOSITED,
    LedgerEvent.ESCROW_APPROVED,
    LedgerEvent.ESCROW_REJECTED,
    LedgerEvent.ESCROW_ARCHIVED,
}


# --- Revert messages ---

ONLY_AGENT = "Only Agent can call this function"
ONLY_BUYER = "Only buyer can deposit to Escrow"
SAME_PARTIES = "Buyer and Seller should be Different"
DEPOSIT_NOT_PENDING = "Deposit is only allowed on pending Escrow"
DEPOSIT_WRONG_AMOUNT = "Deposit must be equal to escrow's needed amount"
APPROVE_NOT_DEPOSITED = "You can only approve Escrow with deposited status"
REJECT_NOT_DEPOSITED = "You can only reject Escrow with deposited status"
ARCHIVE_ACTIVE = "Can't archive active Escrow"
FEE_OUT_OF_RANGE = "Value should be non-decimal in range of 0 and 99"


# --- Errors ---

class LedgerError(Exception):
    """Base for every rejection the ledger can issue.

    A rejected operation never leaves a partial state change behind.
    """
    status_code = 400


class AuthorizationError(LedgerError):
    """Caller lacks the role an operation requires (agent or buyer)."""
    status_code = 403


class StateError(LedgerError):
    """Operation is not valid for the record's current status."""
    status_code = 409


class ValidationError(LedgerError):
    """Malformed input: bad address, same parties, fee out of range, wrong payment."""
    status_code = 400


class NotFoundError(LedgerError):
    """No escrow record with the requested id."""
    status_code = 404


class PaymentError(LedgerError):
    """Payment backend refused a transfer (e.g. insufficient balance)."""
    status_code = 402


ERROR_TYPES = {
    cls.__name__: cls
    for cls in (LedgerError, AuthorizationError, StateError,
                ValidationError, NotFoundError, PaymentError)
}
