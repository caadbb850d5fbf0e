# SPDX-License-Identifier: AGPL-3.0-or-later
"""HTTP API for the escrow agent ledger (FastAPI).

Endpoints mirror the ledger interface: initiate, deposit, approve, reject,
archive, agent/fee administration, fee withdrawal, and reads. A server-sent
event stream pushes every change notification to subscribers.

Ed25519 authentication: every mutating request must be signed. The caller's
account address is derived from the verified public key.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json as json_mod
import logging
import queue as _queue_mod
import threading

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.responses import StreamingResponse
from pydantic import BaseModel

from server.escrow import EscrowLedger
from crypto import (
    verify_request_ed25519, pubkey_to_address, ReplayGuard,
    HEADER_TIMESTAMP, HEADER_SIGNATURE, HEADER_PUBKEY,
)
from protocol import (
    PROTOCOL_VERSION, DEFAULT_CURRENCY, WEI_PER_ETH,
    MIN_AGENT_FEE_PERCENTAGE, MAX_AGENT_FEE_PERCENTAGE,
    MAX_SSE_SUBSCRIBERS, SSE_QUEUE_SIZE, SSE_KEEPALIVE_SECONDS,
    LedgerError,
)

logger = logging.getLogger(__name__)


# --- Request/Response models ---

class InitiateRequest(BaseModel):
    seller: str
    buyer: str
    amount: int  # wei
    description: str = ""

class DepositRequest(BaseModel):
    value: int  # wei, must equal the escrow's deposit_amount

class ChangeAgentRequest(BaseModel):
    new_agent: str

class ChangeFeeRequest(BaseModel):
    new_fee: int


async def _verify_auth(request: Request) -> str:
    """Verify an Ed25519-signed request and return the caller's address.

    Requires X-Escrow-Timestamp, X-Escrow-Signature, and X-Escrow-Pubkey headers.
    The signature covers: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    timestamp = request.headers.get(HEADER_TIMESTAMP, "")
    signature = request.headers.get(HEADER_SIGNATURE, "")
    pubkey_hex = request.headers.get(HEADER_PUBKEY, "")

    if not timestamp or not signature or not pubkey_hex:
        raise HTTPException(401, f"Signed request required ({HEADER_TIMESTAMP} + {HEADER_SIGNATURE} + {HEADER_PUBKEY} headers)")

    body = (await request.body()).decode("utf-8", errors="replace")
    ok, err = verify_request_ed25519(
        request.method, request.url.path, body,
        timestamp, signature, pubkey_hex,
    )
    if not ok:
        raise HTTPException(401, f"Authentication failed: {err}")

    replay_guard = getattr(request.app.state, "replay_guard", None)
    if replay_guard is not None and not replay_guard.check_and_record(signature):
        raise HTTPException(401, "Replay detected")

    return pubkey_to_address(bytes.fromhex(pubkey_hex))


# --- App factory ---

def create_app(ledger: EscrowLedger | None = None, deployer: str = "",
               faucet_amount: int = 0) -> FastAPI:
    """Create FastAPI app with an injected ledger.

    Without a ledger, an in-memory one is deployed with `deployer` as agent.
    faucet_amount > 0 enables POST /faucet when the payment backend can mint
    (SimBackend), so a development server can fund buyers.
    """

    app = FastAPI(title="Escrow Agent Ledger", version=str(PROTOCOL_VERSION))

    _ledger = ledger or EscrowLedger(deployer=deployer)
    _replay_guard = ReplayGuard()

    # --- SSE event bus ---
    # threading Queue: ledger writes publish from worker threads
    _sse_subscribers: list[_queue_mod.Queue] = []
    _sse_lock = threading.Lock()

    def _sse_publish(payload: dict):
        """Push a change notification to all connected SSE subscribers."""
        with _sse_lock:
            dead = []
            for q in _sse_subscribers:
                try:
                    q.put_nowait(payload)
                except _queue_mod.Full:
                    dead.append(q)
            for q in dead:
                _sse_subscribers.remove(q)
                logger.warning("dropped slow SSE subscriber")

    def _sse_subscribe() -> _queue_mod.Queue:
        q = _queue_mod.Queue(maxsize=SSE_QUEUE_SIZE)
        with _sse_lock:
            if len(_sse_subscribers) >= MAX_SSE_SUBSCRIBERS:
                raise HTTPException(503, "Too many SSE subscribers")
            _sse_subscribers.append(q)
        return q

    def _sse_unsubscribe(q: _queue_mod.Queue):
        with _sse_lock:
            if q in _sse_subscribers:
                _sse_subscribers.remove(q)

    _ledger.add_listener(_sse_publish)

    # Expose for testing
    app.state.ledger = _ledger
    app.state.replay_guard = _replay_guard
    app.state.sse_subscribe = _sse_subscribe
    app.state.sse_unsubscribe = _sse_unsubscribe
    app.state.sse_subscribers = _sse_subscribers

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    # --- Escrows ---

    @app.get("/escrows")
    def list_escrows():
        return {"escrows": [r.to_dict() for r in _ledger.get_all_escrows()]}

    @app.post("/escrows")
    async def initiate_escrow(req: InitiateRequest, request: Request):
        """Agent opens a new escrow at the current fee."""
        caller = await _verify_auth(request)
        escrow_id = await asyncio.to_thread(
            _ledger.initiate, caller, req.seller, req.buyer, req.amount, req.description,
        )
        record = await asyncio.to_thread(_ledger.get_escrow_by_id, escrow_id)
        return {"id": escrow_id, "escrow": record.to_dict()}

    @app.get("/escrows/{escrow_id}")
    def get_escrow(escrow_id: int):
        return _ledger.get_escrow_by_id(escrow_id).to_dict()

    @app.post("/escrows/{escrow_id}/deposit")
    async def deposit_escrow(escrow_id: int, req: DepositRequest, request: Request):
        """Buyer pays the exact deposit amount. PENDING -> DEPOSITED."""
        caller = await _verify_auth(request)
        record = await asyncio.to_thread(_ledger.deposit, caller, escrow_id, req.value)
        return {"escrow": record.to_dict()}

    @app.post("/escrows/{escrow_id}/approve")
    async def approve_escrow(escrow_id: int, request: Request):
        """Agent releases funds to the seller minus fee. DEPOSITED -> APPROVED."""
        caller = await _verify_auth(request)
        record = await asyncio.to_thread(_ledger.approve, caller, escrow_id)
        return {"escrow": record.to_dict()}

    @app.post("/escrows/{escrow_id}/reject")
    async def reject_escrow(escrow_id: int, request: Request):
        """Agent refunds the buyer. DEPOSITED -> REJECTED."""
        caller = await _verify_auth(request)
        record = await asyncio.to_thread(_ledger.reject, caller, escrow_id)
        return {"escrow": record.to_dict()}

    @app.post("/escrows/{escrow_id}/archive")
    async def archive_escrow(escrow_id: int, request: Request):
        """Agent retires an unfunded escrow. PENDING -> ARCHIVED."""
        caller = await _verify_auth(request)
        record = await asyncio.to_thread(_ledger.archive, caller, escrow_id)
        return {"escrow": record.to_dict()}

    # --- Agent administration ---

    @app.get("/agent")
    def get_agent():
        return {"agent": _ledger.agent()}

    @app.post("/agent")
    async def change_agent(req: ChangeAgentRequest, request: Request):
        caller = await _verify_auth(request)
        agent = await asyncio.to_thread(_ledger.change_agent, caller, req.new_agent)
        return {"agent": agent}

    @app.get("/agent_fee_percentage")
    def get_agent_fee_percentage():
        return {"agent_fee_percentage": _ledger.agent_fee_percentage()}

    @app.post("/agent_fee_percentage")
    async def change_agent_fee_percentage(req: ChangeFeeRequest, request: Request):
        caller = await _verify_auth(request)
        fee = await asyncio.to_thread(_ledger.change_agent_fee_percentage, caller, req.new_fee)
        return {"agent_fee_percentage": fee}

    @app.get("/withdrawable_funds")
    def get_withdrawable_funds():
        return {"withdrawable_funds": _ledger.withdrawable_funds()}

    @app.post("/withdraw")
    async def withdraw_funds(request: Request):
        caller = await _verify_auth(request)
        amount = await asyncio.to_thread(_ledger.withdraw_funds, caller)
        return {"withdrawn": amount}

    # --- Development faucet ---

    @app.post("/faucet")
    async def faucet(request: Request):
        """Credit the caller with faucet_amount wei (simulated payments only)."""
        caller = await _verify_auth(request)
        fund = getattr(_ledger.payment, "fund", None)
        if faucet_amount <= 0 or fund is None:
            raise HTTPException(404, "Faucet disabled")
        await asyncio.to_thread(fund, caller, faucet_amount)
        balance = await asyncio.to_thread(_ledger.payment.get_balance, caller)
        logger.info("faucet: %d wei to %s", faucet_amount, caller)
        return {"address": caller, "funded": faucet_amount, "balance": balance}

    @app.get("/ledger_info")
    def ledger_info():
        """Ledger-wide state and advertised constants."""
        return {
            **_ledger.state().to_dict(),
            "custody_balance": _ledger.custody_balance(),
            "escrow_count": len(_ledger.get_all_escrows()),
            "min_agent_fee_percentage": MIN_AGENT_FEE_PERCENTAGE,
            "max_agent_fee_percentage": MAX_AGENT_FEE_PERCENTAGE,
            "currency": DEFAULT_CURRENCY,
            "wei_per_unit": WEI_PER_ETH,
            "protocol_version": PROTOCOL_VERSION,
        }

    # --- Change feed ---

    @app.get("/events/stream")
    async def stream_events(event: str = ""):
        """SSE stream of ledger change notifications.

        Optional filter: event (comma-separated event names).

        Usage:
            curl -N http://localhost:8000/events/stream

        Events:
            data: {"event": "escrow_initiated", "id": 3, "timestamp": 1700000000}
            data: {"event": "agent_fee_changed", "agent_fee_percentage": 20, "timestamp": ...}
        """
        wanted = {e for e in event.split(",") if e}
        q = _sse_subscribe()

        async def event_generator():
            try:
                while True:
                    try:
                        payload = await asyncio.to_thread(q.get, True, SSE_KEEPALIVE_SECONDS)
                    except _queue_mod.Empty:
                        yield ": keepalive\n\n"
                        continue
                    if wanted and payload.get("event") not in wanted:
                        continue
                    yield f"data: {json_mod.dumps(payload)}\n\n"
            finally:
                _sse_unsubscribe(q)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app
