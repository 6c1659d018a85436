import random
from collections import Counter

import pytest

import sampler.constants as C
from sampler.constants import OperationKind
from sampler.fee_info import FeeSchedule
from sampler.txn_factory.generator import TransactionGenerator, consumed_sequences
from sampler.txn_factory.operations import (
    GeneratorEntry,
    build_payment,
    choose_weighted,
    default_generators,
    weights_for_population,
)

from conftest import make_generator, make_record

FEES = FeeSchedule(base_fee=100, reserve=200)


def _two_accounts(store, balance=10_000):
    source = make_record("rSource", balance, sequence=5)
    destination = make_record("rDest", 0, sequence=3)
    store.add_account(source)
    store.add_account(destination)
    return source, destination


async def _generate(gen, attempts=50):
    for _ in range(attempts):
        candidate = await gen.generate()
        if candidate is not None:
            return candidate
    raise AssertionError("no candidate generated")


class TestWeights:
    def test_choose_weighted_frequencies(self):
        a = GeneratorEntry(build_payment, 60, OperationKind.PAYMENT)
        b = GeneratorEntry(build_payment, 40, OperationKind.CREATE_ACCOUNT)
        rng = random.Random(11)
        picks = Counter(choose_weighted([a, b], rng).kind for _ in range(20_000))
        assert abs(picks[OperationKind.PAYMENT] / 20_000 - 0.6) < 0.02
        assert abs(picks[OperationKind.CREATE_ACCOUNT] / 20_000 - 0.4) < 0.02

    def test_choose_weighted_past_table(self):
        entries = [GeneratorEntry(build_payment, 50)]
        rng = random.Random(3)
        picks = [choose_weighted(entries, rng) for _ in range(2000)]
        assert 0.45 < picks.count(None) / 2000 < 0.55

    def test_population_weights(self):
        weights = weights_for_population(10_000, 1_000_000)
        assert weights == {OperationKind.CREATE_ACCOUNT: 1, OperationKind.PAYMENT: 99}
        assert weights_for_population(5, 1)[OperationKind.CREATE_ACCOUNT] == 100
        with pytest.raises(ValueError):
            weights_for_population(1, 0)

    def test_default_generators(self):
        entries = default_generators({"CreateAccount": 30, "Payment": 70})
        assert [(e.kind, e.bias) for e in entries] == [
            (OperationKind.CREATE_ACCOUNT, 30),
            (OperationKind.PAYMENT, 70),
        ]

    @pytest.mark.parametrize(
        "weights",
        [
            {"Payment": 90},
            {"Payment": 110, "CreateAccount": -10},
            {"TrustSet": 100},
        ],
    )
    def test_default_generators_invalid(self, weights):
        with pytest.raises(ValueError):
            default_generators(weights)


class TestGenerate:
    def test_consumed_sequences(self):
        assert consumed_sequences(1) == 1
        assert consumed_sequences(2) == 3
        assert consumed_sequences(8) == 9

    def test_max_operations_positive(self, store):
        with pytest.raises(ValueError):
            make_generator(store, FEES, max_operations=0)

    @pytest.mark.asyncio
    async def test_single_payment_debits_amount_and_fee(self, store):
        source, destination = _two_accounts(store)
        gen = make_generator(store, FEES, max_operations=1)

        candidate = await _generate(gen)
        assert candidate.source is source
        assert candidate.sequence == 5
        assert len(candidate.operations) == 1
        assert candidate.fee == 100
        op = candidate.operations[0].operation
        assert op.kind is OperationKind.PAYMENT
        assert op.destination == destination.address
        assert op.amount >= FEES.reserve
        assert source.balance == 10_000 - op.amount - 100
        assert source.balance >= FEES.reserve
        assert source.known_sequence == 6
        # nothing credited until commit
        assert destination.balance == 0
        assert not store.in_transaction

        candidate.commit()
        assert destination.balance == op.amount

    @pytest.mark.asyncio
    async def test_reject_restores_source(self, store):
        source, destination = _two_accounts(store)
        gen = make_generator(store, FEES, max_operations=1)

        candidate = await _generate(gen)
        candidate.reject()
        assert (source.balance, source.known_sequence) == (10_000, 5)
        assert destination.balance == 0

    @pytest.mark.asyncio
    async def test_batches(self, store):
        source, _ = _two_accounts(store, balance=1_000_000)
        gen = make_generator(store, FEES, max_operations=C.MAX_OPERATIONS_PER_TXN)

        sizes = Counter()
        for _ in range(300):
            candidate = await gen.generate()
            if candidate is None:
                continue
            k = len(candidate.operations)
            sizes[k] += 1
            assert 1 <= k <= C.MAX_OPERATIONS_PER_TXN
            assert candidate.fee == (100 * (k + 2) if k > 1 else 100)
            assert candidate.next_sequence == 5 + consumed_sequences(k)
            assert source.known_sequence == candidate.next_sequence
            assert 1_000_000 - source.balance == candidate.amount + candidate.fee
            assert source.balance >= FEES.reserve
            assert all(b.operation.amount >= FEES.reserve for b in candidate.operations)
            candidate.reject()
            assert (source.balance, source.known_sequence) == (1_000_000, 5)
        assert any(k > 1 for k in sizes)

    @pytest.mark.asyncio
    async def test_create_account_commit(self, store):
        source, _ = _two_accounts(store, balance=100_000)
        gen = make_generator(store, FEES, {"CreateAccount": 100}, max_operations=4)

        candidate = await _generate(gen)
        wallets = candidate.new_wallets
        assert len(wallets) == len(candidate.operations)
        assert all(address not in store for address in wallets)

        candidate.commit()
        assert len(store) == 2 + len(wallets)
        for built in candidate.operations:
            record = store.get_by_address(built.operation.destination)
            assert record.balance == built.operation.amount
            assert record.wallet is built.operation.wallet

    @pytest.mark.asyncio
    async def test_create_account_reject(self, store):
        source, _ = _two_accounts(store, balance=100_000)
        gen = make_generator(store, FEES, {"CreateAccount": 100})

        candidate = await _generate(gen)
        candidate.reject()
        assert len(store) == 2
        assert (source.balance, source.known_sequence) == (100_000, 5)

    @pytest.mark.asyncio
    async def test_starved_population(self, store):
        for i in range(5):
            store.add_account(make_record(f"r{i}", 250, sequence=1))
        gen = make_generator(store, FEES)

        for _ in range(20):
            assert await gen.generate() is None
        assert all(r.balance == 250 and r.known_sequence == 1 for r in store.accounts())
        assert not store.in_transaction

    @pytest.mark.asyncio
    async def test_selection_is_bounded(self, ledger, store):
        for i in range(5):
            store.add_account(make_record(f"rGhost{i}", 10_000, sequence=None))
        gen = make_generator(store, FEES, max_selection_attempts=10)

        assert await gen.select_account() is None
        assert sum(ledger.fetches.values()) == 10

    @pytest.mark.asyncio
    async def test_root_always_selectable(self, store):
        root = make_record("rRoot", 10_000, sequence=None, is_root=True)
        store.add_account(root)
        gen = make_generator(store, FEES)
        assert await gen.select_account() is root

    @pytest.mark.asyncio
    async def test_all_operations_skipped(self, store):
        source, destination = _two_accounts(store)
        gen = TransactionGenerator(store, FEES, [GeneratorEntry(build_payment, 0)], rng=random.Random(1))

        for _ in range(10):
            assert await gen.generate() is None
        assert (source.balance, source.known_sequence) == (10_000, 5)
        assert destination.balance == 0
        assert not store.in_transaction

    @pytest.mark.asyncio
    async def test_failing_builder_leaves_no_trace(self, store):
        source, _ = _two_accounts(store)
        calls = 0

        async def flaky(gen, src, budget):
            nonlocal calls
            calls += 1
            if calls > 1:
                raise RuntimeError("boom")
            return await build_payment(gen, src, budget)

        gen = TransactionGenerator(store, FEES, [GeneratorEntry(flaky, 100)], rng=random.Random(1), max_operations=1)
        candidate = await _generate(gen)
        candidate.commit()
        balance, sequence = source.balance, source.known_sequence

        with pytest.raises(RuntimeError):
            for _ in range(50):
                await gen.generate()
        assert (source.balance, source.known_sequence) == (balance, sequence)
        assert not store.in_transaction


class TestCreateAccounts:
    @pytest.mark.asyncio
    async def test_fan_out(self, store):
        source, _ = _two_accounts(store, balance=100_000)
        gen = make_generator(store, FEES)

        candidate = await gen.build_create_accounts(source, 4, 5_000)
        assert len(candidate.operations) == 4
        assert all(b.operation.kind is OperationKind.CREATE_ACCOUNT for b in candidate.operations)
        assert all(b.operation.amount == 5_000 for b in candidate.operations)
        assert candidate.fee == FEES.transaction_fee(4) == 600
        assert source.balance == 100_000 - 4 * 5_000 - 600
        assert source.known_sequence == 5 + 5

    @pytest.mark.asyncio
    async def test_unaffordable(self, store):
        source, _ = _two_accounts(store, balance=1_000)
        gen = make_generator(store, FEES)
        assert await gen.build_create_accounts(source, 2, 5_000) is None
        assert await gen.build_create_accounts(source, 1, 100) is None
        assert source.balance == 1_000

    @pytest.mark.asyncio
    async def test_count_bounds(self, store):
        source, _ = _two_accounts(store)
        gen = make_generator(store, FEES)
        with pytest.raises(ValueError):
            await gen.build_create_accounts(source, 0, 1_000)
        with pytest.raises(ValueError):
            await gen.build_create_accounts(source, C.MAX_OPERATIONS_PER_TXN + 1, 1_000)
