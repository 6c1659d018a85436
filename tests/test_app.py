import asyncio
import random

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from sampler.app import app as sampler_app
from sampler.app import r_sampler, r_state, wait_for_rpc
from sampler.ledger import Backoff, ConfirmationTimeout
from sampler.logging_config import QUIET, logging_config
from sampler.sampler_core import Sampler

from conftest import ROOT_WALLET, make_record, sampler_config


def _app(sampler: Sampler | None) -> FastAPI:
    app = FastAPI()
    app.include_router(r_state)
    app.include_router(r_sampler)
    if sampler is not None:
        app.state.sampler = sampler
    return app


@pytest.fixture
def sampler(ledger):
    sampler = Sampler(sampler_config(), ledger, rng=random.Random(1))
    asyncio.run(sampler.bootstrap())
    sampler.store.add_account(make_record("rDest", 0, sequence=3))
    return sampler


@pytest.fixture
def client(sampler):
    return TestClient(_app(sampler))


def test_health():
    assert TestClient(sampler_app).get("/health").json() == {"status": "ok"}


def test_not_initialized():
    r = TestClient(_app(None)).get("/state/stats")
    assert r.status_code == 503


def test_stats(client):
    body = client.get("/state/stats").json()
    assert body["store"]["count"] == 2
    assert body["root"]["address"] == ROOT_WALLET.address
    assert body["stats"]["committed"] == 0
    assert body["stopped"] is False


def test_accounts(client):
    body = client.get("/state/accounts", params={"limit": 1, "offset": 1}).json()
    assert body["count"] == 2
    assert [a["address"] for a in body["accounts"]] == ["rDest"]

    assert client.get("/state/accounts", params={"limit": 0}).status_code == 422


def test_account(client):
    body = client.get(f"/state/accounts/{ROOT_WALLET.address}").json()
    assert body["is_root"] is True
    assert body["balance"] == 10_000
    assert client.get("/state/accounts/rNobody").status_code == 404


def test_pending_and_failed_start_empty(client):
    assert client.get("/state/pending").json() == []
    assert client.get("/state/failed").json() == []


def test_ledger_failures(client, ledger):
    ledger.ledgers[3] = [
        {
            "hash": "H1",
            "tx_json": {"Account": ROOT_WALLET.address, "TransactionType": "Payment", "Sequence": 5, "Fee": "100"},
            "meta": {"TransactionResult": "tecUNFUNDED_PAYMENT", "AffectedNodes": []},
        },
        {
            "hash": "H2",
            "tx_json": {"Account": "rUntracked", "TransactionType": "Payment", "Sequence": 1, "Fee": "100"},
            "meta": {"TransactionResult": "tecUNFUNDED_PAYMENT", "AffectedNodes": []},
        },
    ]
    body = client.get("/state/ledger-failures").json()
    assert [f["hash"] for f in body] == ["H1"]
    assert body[0]["ledger_index"] == 3


def test_stop(client, sampler):
    r = client.post("/sampler/stop")
    assert r.status_code == 200
    assert r.json()["status"] == "stopped"
    assert sampler.stop.is_set()
    assert client.post("/sampler/stop").status_code == 400


FAST_STARTUP = Backoff(initial=0.001, factor=1.0, maximum=0.001, timeout=1.0)


@pytest.mark.asyncio
async def test_wait_for_rpc_retries_until_answered():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"result": {"info": {"server_state": "full"}}})

    info = await wait_for_rpc("http://node:5005", FAST_STARTUP, transport=httpx.MockTransport(handler))
    assert info["server_state"] == "full"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_wait_for_rpc_gives_up():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"result": {}}))
    with pytest.raises(ConfirmationTimeout):
        await wait_for_rpc("http://node:5005", Backoff(initial=0.01, maximum=0.01, timeout=0.05), transport=transport)


def test_logging_config_without_file():
    conf = logging_config("debug", log_file="")
    assert list(conf["handlers"]) == ["stdout"]
    assert conf["loggers"]["sampler"]["level"] == "DEBUG"
    for name, level in QUIET.items():
        assert conf["loggers"][name] == {"level": level, "handlers": ["stdout"], "propagate": False}


def test_logging_config_with_file(tmp_path):
    conf = logging_config("info", log_file=str(tmp_path / "run.log"))
    assert conf["handlers"]["logfile"]["filename"] == str(tmp_path / "run.log")
    assert conf["root"]["handlers"] == ["stdout", "logfile"]
