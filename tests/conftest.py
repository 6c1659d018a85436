"""
Shared fixtures for the test suite.

``FakeLedger`` stands in for ``LedgerClient``: it answers sequence/account
lookups from dicts, accepts every submission with a configurable engine result
and resolves confirmation according to ``confirm`` ("sequence", "timeout",
"cancel").
"""

import random
from collections import Counter

import pytest
from xrpl import CryptoAlgorithm
from xrpl.wallet import Wallet

import sampler.constants as C
from sampler.accounts import AccountRecord, AccountStore, KeyAllocator, Resolved
from sampler.fee_info import FeeSchedule
from sampler.ledger import AccountNotFound, ConfirmationTimeout, PollCancelled, Submission, SubmissionResult
from sampler.txn_factory.generator import TransactionGenerator
from sampler.txn_factory.operations import default_generators

ROOT_WALLET = Wallet.from_seed(C.ROOT["seed"], algorithm=CryptoAlgorithm.SECP256K1)


def success_record(tx_hash: str, result: str = "tesSUCCESS", nodes: list | None = None) -> dict:
    return {
        "hash": tx_hash,
        "validated": True,
        "ledger_index": 10,
        "meta": {"TransactionResult": result, "AffectedNodes": nodes or []},
    }


class FakeLedger:
    def __init__(self, fees: FeeSchedule | None = None):
        self.fees = fees or FeeSchedule(base_fee=100, reserve=200)
        self.sequences: dict[str, int] = {}
        self.balances: dict[str, int] = {}
        self.fetches: Counter[str] = Counter()
        self.submitted = []
        self.engine_result = "tesSUCCESS"
        self.confirm = "sequence"
        self.lookup: list[dict] | None = None  # what lookup_results returns; None -> nothing found
        self.results: list[dict] | None = None  # what wait_for_results returns; None -> all tesSUCCESS
        self.ledgers: dict[int, list[dict]] = {}
        self.stop = None

    def add(self, address: str, balance: int, sequence: int) -> None:
        self.balances[address] = balance
        self.sequences[address] = sequence

    async def fetch_sequence(self, address: str) -> int:
        self.fetches[address] += 1
        if address not in self.sequences:
            raise AccountNotFound(address)
        return self.sequences[address]

    async def fetch_account(self, address: str) -> int:
        if address not in self.balances:
            raise AccountNotFound(address)
        return self.balances[address]

    async def fee_schedule(self, fallback: FeeSchedule | None = None) -> FeeSchedule:
        return self.fees

    async def latest_validated_ledger(self) -> int:
        return 10

    async def ledger_transactions(self, index: int) -> list[dict]:
        return self.ledgers.get(index, [])

    async def submit(self, candidate) -> Submission:
        self.submitted.append(candidate)
        n = len(self.submitted)
        hashes = [f"{n:04d}".ljust(64, "A")]
        if len(candidate.operations) > 1:
            hashes += [f"{n:04d}{i:02d}".ljust(64, "B") for i in range(len(candidate.operations))]
        result = SubmissionResult(self.engine_result, "", hashes[0])

        async def wait_for_sequence(stop=None):
            self._maybe_fail()
            self._validate(candidate)
            return candidate.next_sequence

        async def wait_for_results(stop=None):
            self._maybe_fail()
            if self.results is not None:
                return self.results
            self._validate(candidate)
            return [success_record(h) for h in hashes]

        async def lookup_results():
            return self.lookup or []

        return Submission(result, hashes, wait_for_sequence, wait_for_results, lookup_results)

    def _validate(self, candidate):
        # accounts created by a validated transaction exist from then on
        for address in candidate.new_wallets:
            self.sequences.setdefault(address, 1)

    def _maybe_fail(self):
        if self.confirm == "timeout":
            raise ConfirmationTimeout("not seen")
        if self.confirm == "cancel":
            raise PollCancelled("stop")


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def ledger():
    fake = FakeLedger()
    fake.add(ROOT_WALLET.address, 10_000, 5)
    return fake


@pytest.fixture
def store(ledger, rng):
    return AccountStore(ledger.fetch_sequence, capacity=100, rng=rng)


def make_record(address: str, balance: int, sequence: int | None = 1, **kw) -> AccountRecord:
    return AccountRecord(address=address, balance=balance, sequence=Resolved(sequence) if sequence else None, **kw)


def make_generator(store, fees, weights=None, **kw) -> TransactionGenerator:
    weights = weights or {"Payment": 100}
    return TransactionGenerator(
        store,
        fees,
        default_generators(weights),
        keys=KeyAllocator(C.KeyMode.COUNTER),
        rng=store.rng,
        **kw,
    )


def sampler_config(**sampler_overrides) -> dict:
    sampler = {
        "tx_rate": 1,
        "tick_interval": 0.0,
        "total_operations": 100,
        "max_operations": 1,
        "verify_results": False,
        "keys": "counter",
        "seed": 7,
    }
    sampler.update(sampler_overrides)
    return {
        "root_account": {"seed": C.ROOT["seed"], "algorithm": "secp256k1"},
        "store": {"capacity": 1000},
        "fees": {"base_fee": 100, "reserve": 200},
        "sampler": sampler,
        "operations": {"weights": {"Payment": 100}},
        "initializer": {},
    }
