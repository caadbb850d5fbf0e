"""Client-side read model of the escrow ledger.

EscrowSync mirrors ledger state for display and drives writes through an
EscrowClient. It holds no authority of its own: everything it shows comes
from snapshot reads (refresh/poll) or from change notifications merged as
they arrive (subscribe/handle_event).

Writes run one at a time behind an is_mining flag that is set for the
duration of the request and always cleared afterwards. Failures are
reported through the notify callback, never retried.
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Callable

import httpx

from client import EscrowClient
from protocol import (
    ESCROW_EVENTS, MIN_AGENT_FEE_PERCENTAGE, MAX_AGENT_FEE_PERCENTAGE,
    EscrowStatus, LedgerError, LedgerEvent, eth_to_wei, wei_to_eth,
)

logger = logging.getLogger(__name__)

FIELDS_MISSING = "Fields are missing!"
FIELD_MISSING = "Field is missing"
FEE_RANGE = f"Number should be between {MIN_AGENT_FEE_PERCENTAGE} and {MAX_AGENT_FEE_PERCENTAGE}"
BUSY = "Another transaction is still mining"


def _log_notify(text: str, kind: str):
    logger.info("[%s] %s", kind, text)


def to_view(record: dict) -> dict:
    """Ledger record -> display record (adds ETH amount and status name)."""
    view = dict(record)
    view["deposit_amount_eth"] = wei_to_eth(record["deposit_amount"])
    view["status_name"] = EscrowStatus(int(record["status"])).name
    return view


def sort_escrows(escrows: list[dict]) -> list[dict]:
    """Most recently updated first; newer ids win ties."""
    return sorted(escrows, key=lambda e: (e["updated_at"], e["id"]), reverse=True)


class EscrowSync:
    """Local mirror of one ledger, seen from one account."""

    def __init__(self, client: EscrowClient, notify: Callable[[str, str], None] | None = None):
        self.client = client
        self.account = (client.address or "").lower()
        self.notify = notify or _log_notify

        self.escrows: list[dict] = []
        self.agent = ""
        self.agent_fee_percentage = 0
        self.withdrawable_funds = 0
        self.is_mining = False
        self.last_error: Exception | None = None

    # --- Read model ---

    @property
    def is_agent(self) -> bool:
        return bool(self.account) and self.account == self.agent.lower()

    @property
    def withdrawable_funds_eth(self) -> Decimal:
        return wei_to_eth(self.withdrawable_funds)

    def get_escrow(self, escrow_id: int) -> dict | None:
        for e in self.escrows:
            if e["id"] == escrow_id:
                return e
        return None

    def _upsert(self, record: dict):
        view = to_view(record)
        others = [e for e in self.escrows if e["id"] != view["id"]]
        self.escrows = sort_escrows(others + [view])

    async def refresh(self):
        """Snapshot fetch: escrows, agent, fee, withdrawable funds.

        Four independent reads. A write landing between them can leave the
        snapshot briefly inconsistent until the next refresh or event.
        """
        records = await self.client.get_all_escrows()
        self.agent = await self.client.agent()
        self.agent_fee_percentage = await self.client.agent_fee_percentage()
        self.withdrawable_funds = await self.client.withdrawable_funds()
        self.escrows = sort_escrows([to_view(r) for r in records])

    async def poll(self, interval: float = 10.0, iterations: int | None = None):
        """Refresh every interval seconds (forever unless iterations is given)."""
        n = 0
        while iterations is None or n < iterations:
            await self.refresh()
            n += 1
            if iterations is None or n < iterations:
                await asyncio.sleep(interval)

    async def handle_event(self, event: dict):
        """Merge one change notification into the read model."""
        try:
            kind = LedgerEvent(event.get("event", ""))
        except ValueError:
            logger.debug("ignoring unknown event: %s", event)
            return

        if kind in ESCROW_EVENTS:
            self._upsert(await self.client.get_escrow_by_id(event["id"]))
            if kind is LedgerEvent.ESCROW_APPROVED:
                self.withdrawable_funds = await self.client.withdrawable_funds()
        elif kind is LedgerEvent.FUNDS_WITHDRAWN:
            self.withdrawable_funds = 0
        elif kind is LedgerEvent.AGENT_CHANGED:
            self.agent = event["agent"]
        elif kind is LedgerEvent.AGENT_FEE_CHANGED:
            self.agent_fee_percentage = event["agent_fee_percentage"]

    async def subscribe(self):
        """Follow the ledger's change feed until the connection drops."""
        await self.client.stream_events(callback=self.handle_event)

    # --- Writes ---

    def _classify(self, action: str, error: Exception, role: str | None,
                  escrow_id: int | None) -> str:
        """Pick the message for a failed write from cached state.

        Only a heuristic: the cache can be stale (e.g. the agent changed
        since the last refresh), in which case the generic message is shown.
        """
        if isinstance(error, LedgerError):
            if role == "agent" and not self.is_agent:
                return f"Only the agent can {action}"
            if role == "buyer":
                cached = self.get_escrow(escrow_id)
                if cached and cached["buyer"].lower() != self.account:
                    return "Only the buyer can deposit to this escrow"
        return f"Failed to {action}: {error}"

    async def _submit(self, action: str, call, role: str | None = None,
                      escrow_id: int | None = None):
        if self.is_mining:
            self.notify(BUSY, "warning")
            return None

        self.is_mining = True
        try:
            result = await call()
        except (LedgerError, httpx.HTTPError) as e:
            self.last_error = e
            logger.warning("%s failed: %s", action, e)
            self.notify(self._classify(action, e, role, escrow_id), "error")
            return None
        finally:
            self.is_mining = False

        self.last_error = None
        self.notify(f"{action[0].upper()}{action[1:]} succeeded", "success")
        try:
            await self.refresh()
        except (LedgerError, httpx.HTTPError) as e:
            # The write stands; only the local mirror is behind
            self.last_error = e
            logger.warning("refresh after %s failed: %s", action, e)
            self.notify(f"Could not refresh after {action}: {e}", "warning")
        return result

    async def initiate_escrow(self, seller: str, buyer: str, amount_eth, description: str = ""):
        """Open an escrow for amount_eth (ETH). Returns the new id, or None."""
        if not seller or not buyer or not amount_eth:
            self.notify(FIELDS_MISSING, "error")
            return None
        try:
            amount = eth_to_wei(amount_eth)
        except (InvalidOperation, ValueError):
            self.notify(f"Invalid amount: {amount_eth}", "error")
            return None
        return await self._submit(
            "initiate escrow",
            lambda: self.client.initiate(seller, buyer, amount, description),
            role="agent",
        )

    async def deposit_escrow(self, escrow_id: int):
        """Pay the escrow's deposit amount from this account.

        An escrow missing from the cache is fetched first; a failed lookup is
        reported like any other failed write.
        """
        async def pay():
            if self.get_escrow(escrow_id) is None:
                self._upsert(await self.client.get_escrow_by_id(escrow_id))
            amount = int(self.get_escrow(escrow_id)["deposit_amount"])
            return await self.client.deposit(escrow_id, amount)

        return await self._submit(
            "deposit to escrow", pay,
            role="buyer", escrow_id=escrow_id,
        )

    async def approve_escrow(self, escrow_id: int):
        return await self._submit(
            "approve escrow", lambda: self.client.approve(escrow_id),
            role="agent", escrow_id=escrow_id,
        )

    async def reject_escrow(self, escrow_id: int):
        return await self._submit(
            "reject escrow", lambda: self.client.reject(escrow_id),
            role="agent", escrow_id=escrow_id,
        )

    async def archive_escrow(self, escrow_id: int):
        return await self._submit(
            "archive escrow", lambda: self.client.archive(escrow_id),
            role="agent", escrow_id=escrow_id,
        )

    async def change_agent(self, new_agent: str):
        if not new_agent:
            self.notify(FIELD_MISSING, "error")
            return None
        return await self._submit(
            "change the agent", lambda: self.client.change_agent(new_agent),
            role="agent",
        )

    async def change_agent_fee_percentage(self, new_fee: int | None):
        if new_fee is None:
            self.notify(FIELD_MISSING, "error")
            return None
        if not MIN_AGENT_FEE_PERCENTAGE <= new_fee <= MAX_AGENT_FEE_PERCENTAGE:
            self.notify(FEE_RANGE, "error")
            return None
        return await self._submit(
            "update the agent fee",
            lambda: self.client.change_agent_fee_percentage(new_fee),
            role="agent",
        )

    async def withdraw_funds(self):
        return await self._submit(
            "withdraw funds", self.client.withdraw_funds, role="agent",
        )
