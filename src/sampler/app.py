import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, PositiveInt
from xrpl.asyncio.clients import AsyncJsonRpcClient, AsyncWebsocketClient
from xrpl.models import StreamParameter, Subscribe

import sampler.constants as C
from sampler.config import cfg
from sampler.failures import find_failed_transactions
from sampler.ledger import Backoff, LedgerClient, LedgerError, poll
from sampler.logging_config import setup_logging
from sampler.sampler_core import Sampler

setup_logging()
log = logging.getLogger("sampler.app")

if Path("/.dockerenv").is_file():
    rippled = cfg["rippled"]["docker"]
else:
    rippled = cfg["rippled"]["local"]

rpc_port = cfg["rippled"]["rpc_port"]
ws_port = cfg["rippled"]["ws_port"]
rippled_ip = os.getenv("RIPPLED_IP", rippled)

RPC = os.getenv("RPC_URL", f"http://{rippled_ip}:{rpc_port}")
WS = os.getenv("WS_URL", f"ws://{rippled_ip}:{ws_port}")

to = cfg["timeout"]
STARTUP_TIMEOUT = to["startup"]
LEDGERS_TO_WAIT = to["initial_ledgers"]
STARTUP_BACKOFF = Backoff(initial=1.0, factor=1.5, maximum=5.0, timeout=STARTUP_TIMEOUT)


async def wait_for_rpc(url: str, backoff: Backoff = STARTUP_BACKOFF, transport: httpx.AsyncBaseTransport | None = None) -> dict:
    """Ask ``server_info`` until the node answers with one; returns the info block."""
    payload = {"method": "server_info", "params": [{}]}
    async with httpx.AsyncClient(timeout=to.get("rpc", C.RPC_TIMEOUT), transport=transport) as http:

        async def server_info() -> dict | None:
            try:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                return r.json()["result"]["info"]
            except (httpx.HTTPError, ValueError, KeyError) as e:
                log.info("%s not ready: %r", url, e)
                return None

        info = await poll(server_info, backoff, what=f"server_info from {url}")
    log.info("%s answering, server_state=%s", url, info.get("server_state"))
    return info


async def watch_ledger_closes(url: str, count: int) -> list[int]:
    """Block until ``count`` ledgers close on the ledger stream; returns their indexes."""
    closed: list[int] = []
    async with AsyncWebsocketClient(url) as ws:
        await ws.send(Subscribe(streams=[StreamParameter.LEDGER]))
        async for msg in ws:
            if msg.get("type") != "ledgerClosed":
                continue
            closed.append(int(msg["ledger_index"]))
            log.debug("Ledger %s closed (%s/%s)", closed[-1], len(closed), count)
            if len(closed) >= count:
                break
    log.info("Network is advancing, saw ledgers %s", closed)
    return closed


def build_ledger_client(client: AsyncJsonRpcClient, stop: asyncio.Event) -> LedgerClient:
    bo = cfg["backoff"]
    return LedgerClient(
        client,
        rpc_timeout=to.get("rpc", C.RPC_TIMEOUT),
        submit_timeout=to.get("submit", C.SUBMIT_TIMEOUT),
        backoff=Backoff(
            initial=bo.get("initial", C.BACKOFF_INITIAL),
            factor=bo.get("factor", C.BACKOFF_FACTOR),
            maximum=bo.get("max", C.BACKOFF_MAX),
            timeout=to.get("confirm", C.CONFIRM_TIMEOUT),
        ),
        horizon=cfg["sampler"].get("horizon", C.HORIZON),
        stop=stop,
    )


async def run_sampler(sampler: Sampler) -> None:
    """Initializer (when configured) followed by the sampling loop."""
    try:
        accounts = int(cfg["initializer"].get("accounts", 0))
        if accounts:
            created = await sampler.initialize_accounts(accounts)
            log.info("Initializer created %s of %s accounts", created, accounts)
        await sampler.run()
    except asyncio.CancelledError:
        raise
    except Exception:
        # Keep serving /state after a crash so the run can be inspected
        log.exception("Sampler loop crashed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    stop = asyncio.Event()

    # the node must answer and close ledgers before the root can be loaded
    async with asyncio.timeout(STARTUP_TIMEOUT):
        await wait_for_rpc(RPC)
        await watch_ledger_closes(WS, LEDGERS_TO_WAIT)

    ledger = build_ledger_client(AsyncJsonRpcClient(RPC), stop)
    sampler = Sampler(cfg, ledger, stop=stop)
    await sampler.bootstrap()  # BootstrapError is fatal
    app.state.sampler = sampler
    app.state.stop = stop

    async with asyncio.TaskGroup() as tg:
        app.state.sampler_task = tg.create_task(run_sampler(sampler), name="sampler")
        log.info("Sampler started from root %s", sampler.root.address)
        try:
            yield
        finally:
            log.info("Shutting down...")
            stop.set()
            # exiting the TaskGroup waits for the sampler to notice the stop signal

    log.info("Shutdown complete")


r_state = APIRouter(prefix="/state", tags=["State"])
r_sampler = APIRouter(prefix="/sampler", tags=["Sampler"])


class AccountsPage(BaseModel):
    offset: int = 0
    limit: PositiveInt = 100


def _sampler(request: Request) -> Sampler:
    sampler = getattr(request.app.state, "sampler", None)
    if sampler is None:
        raise HTTPException(status_code=503, detail="Sampler not initialized")
    return sampler


@r_state.get("/stats")
def state_stats(request: Request):
    return _sampler(request).snapshot_stats()


@r_state.get("/accounts")
def state_accounts(request: Request, offset: int = 0, limit: PositiveInt = 100):
    page = AccountsPage(offset=offset, limit=limit)
    sampler = _sampler(request)
    return {
        "count": sampler.store.count(),
        "offset": page.offset,
        "accounts": sampler.snapshot_accounts(limit=page.limit, offset=page.offset),
    }


@r_state.get("/accounts/{address}")
def state_account(request: Request, address: str):
    account = _sampler(request).snapshot_account(address)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account not tracked: {address}")
    return account


@r_state.get("/pending")
def state_pending(request: Request):
    return _sampler(request).queue.pending()


@r_state.get("/failed")
def state_failed(request: Request):
    return _sampler(request).failed()


@r_state.get("/ledger-failures")
async def state_ledger_failures(request: Request, from_ledger: PositiveInt = 1, to_ledger: PositiveInt | None = None, limit: PositiveInt = 100):
    """Non-tesSUCCESS transactions found in validated ledgers sent by tracked accounts."""
    sampler = _sampler(request)
    try:
        to_ledger = to_ledger or await sampler.ledger.latest_validated_ledger()
        accounts = {r.address for r in sampler.store.accounts()}
        return await find_failed_transactions(sampler.ledger, to_ledger, from_ledger, accounts=accounts, limit=limit)
    except LedgerError as e:
        raise HTTPException(status_code=502, detail=str(e))


@r_sampler.post("/stop")
async def stop_sampler(request: Request):
    """Signal the sampling loop to stop after the current step."""
    sampler = _sampler(request)
    if sampler.stop.is_set():
        raise HTTPException(status_code=400, detail="Sampler not running")
    log.info("Stopping sampler")
    sampler.stop.set()
    return {"status": "stopped", "stats": sampler.stats.as_dict()}


app = FastAPI(
    title="XRPL Transaction Sampler",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "State", "description": "Tracked accounts and reconciliation state"},
        {"name": "Sampler", "description": "Control the sampling loop"},
    ],
)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(r_state)
app.include_router(r_sampler)
