"""Speculative transaction generation.

A round picks a funded source, splits a random spend across one or more
operations and debits the source for all of it up front. The returned
``Candidate`` carries the closures that later make those debits final
(``commit``) or undo them (``reject``).
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
import random

from xrpl.wallet import Wallet

import sampler.constants as C
from sampler.accounts import AccountRecord, AccountStore, KeyAllocator, current_sequence
from sampler.fee_info import FeeSchedule
from sampler.ledger import LedgerError
from sampler.partition import partition_with_zeros, partition_without_zeros
from sampler.txn_factory.operations import (
    BuiltOperation,
    GeneratorEntry,
    build_create_account,
    choose_weighted,
)

log = logging.getLogger("sampler.txn")


def consumed_sequences(operations: int) -> int:
    """Sequences a transaction of ``operations`` ops uses up (a Batch also consumes one per inner txn)."""
    return operations + 1 if operations > 1 else 1


@dataclass
class Candidate:
    source: AccountRecord
    sequence: int  # sequence of the (outer) transaction
    operations: list[BuiltOperation]
    fee: int  # drops, whole transaction
    commit: Callable[[], None]
    reject: Callable[[], None]

    @property
    def new_wallets(self) -> dict[str, Wallet]:
        return {b.operation.destination: b.operation.wallet for b in self.operations if b.operation.wallet is not None}

    @property
    def amount(self) -> int:
        return sum(b.operation.amount for b in self.operations)

    @property
    def next_sequence(self) -> int:
        return self.sequence + consumed_sequences(len(self.operations))

    def describe(self) -> dict:
        return {
            "source": self.source.address,
            "sequence": self.sequence,
            "fee": self.fee,
            "operations": [
                {"kind": str(b.operation.kind), "destination": b.operation.destination, "amount": b.operation.amount}
                for b in self.operations
            ],
        }

    def __str__(self):
        return f"{self.source.address} seq={self.sequence} ops={len(self.operations)} amount={self.amount} fee={self.fee}"


class TransactionGenerator:
    def __init__(
        self,
        store: AccountStore,
        fees: FeeSchedule,
        entries: Sequence[GeneratorEntry],
        *,
        keys: KeyAllocator | None = None,
        rng: random.Random | None = None,
        max_operations: int = C.MAX_OPERATIONS_PER_TXN,
        max_selection_attempts: int = C.MAX_SELECTION_ATTEMPTS,
    ) -> None:
        if max_operations < 1:
            raise ValueError(f"max_operations must be at least 1, got {max_operations}")
        self.store = store
        self.fees = fees
        self.entries = list(entries)
        self.keys = keys or KeyAllocator()
        self.rng = rng or store.rng
        self.max_operations = max_operations
        self.max_selection_attempts = max_selection_attempts

    async def _sequence_of(self, record: AccountRecord) -> int:
        try:
            return await current_sequence(record)
        except LedgerError as e:
            log.debug("sequence lookup for %s failed: %s", record.address, e)
            return 0

    async def select_account(self, exclude: AccountRecord | None = None) -> AccountRecord | None:
        """Random account whose sequence is live on the ledger. The root always qualifies.

        Gives up after ``max_selection_attempts`` draws.
        """
        for _ in range(self.max_selection_attempts):
            record = self.store.random_account(self.rng)
            if record is None:
                return None
            if record is exclude:
                continue
            if record.is_root or await self._sequence_of(record):
                return record
        return None

    async def _build_operations(self, source: AccountRecord, budgets: list[int]) -> list[BuiltOperation]:
        built = []
        for budget in budgets:
            entry = choose_weighted(self.entries, self.rng)
            if entry is None:
                continue
            op = await entry.builder(self, source, budget)
            if op is None:
                continue
            built.append(op)
        return built

    def _seal(self, source: AccountRecord, sequence: int, built: list[BuiltOperation]) -> Candidate:
        """Debit the fee, advance the sequence and close the bracket opened for ``built``."""
        store = self.store
        fee = self.fees.transaction_fee(len(built))
        store.adjust_balance(source, -fee)
        store.set_sequence(source, sequence + consumed_sequences(len(built)))
        store.end()

        def commit() -> None:
            for op in built:
                op.commit()

        def reject() -> None:
            for op in built:
                op.reject()
            store.adjust_balance(source, fee)
            store.set_sequence(source, sequence)

        return Candidate(source, sequence, built, fee, commit, reject)

    async def generate(self) -> Candidate | None:
        """One speculative transaction, or None when no feasible one exists this round."""
        source = await self.select_account()
        if source is None:
            log.debug("No live source account among %s", self.store.count())
            return None
        sequence = await self._sequence_of(source)
        if not sequence:
            return None

        rng = self.rng
        fees = self.fees
        min_cost = fees.minimum_operation_cost
        available = source.balance - fees.reserve
        if available <= 0 or available <= min_cost:
            log.debug("%s cannot afford an operation (available=%s)", source.address, available)
            return None

        spend = rng.randint(min_cost, available)
        k = rng.randint(1, min(self.max_operations, spend // min_cost))
        remainder = spend - k * min_cost - fees.batch_overhead(k)
        if remainder < 0:
            k, remainder = 1, spend - min_cost

        if remainder >= k:
            parts = partition_without_zeros(remainder, k, rng)
        else:
            parts = partition_with_zeros(remainder, k, rng)
        budgets = [part + min_cost for part in parts]

        self.store.begin()
        try:
            built = await self._build_operations(source, budgets)
        except BaseException:
            self.store.reject()
            raise
        if not built:
            self.store.reject()
            log.debug("Every operation for %s was skipped", source.address)
            return None
        return self._seal(source, sequence, built)

    async def build_create_accounts(self, source: AccountRecord, count: int, starting_balance: int) -> Candidate | None:
        """Fan-out: one transaction creating ``count`` accounts funded with ``starting_balance`` each."""
        if not 1 <= count <= self.max_operations:
            raise ValueError(f"count must be within [1, {self.max_operations}], got {count}")
        fees = self.fees
        if starting_balance < fees.reserve:
            log.debug("Starting balance %s is below the reserve %s", starting_balance, fees.reserve)
            return None
        cost = count * starting_balance + fees.transaction_fee(count)
        if source.balance - fees.reserve < cost:
            log.debug("%s cannot fund %s accounts (balance=%s cost=%s)", source.address, count, source.balance, cost)
            return None
        sequence = await self._sequence_of(source)
        if not sequence:
            return None

        self.store.begin()
        built: list[BuiltOperation] = []
        try:
            for _ in range(count):
                op = await build_create_account(self, source, starting_balance + fees.base_fee)
                if op is not None:
                    built.append(op)
        except BaseException:
            self.store.reject()
            raise
        if not built:
            self.store.reject()
            return None
        return self._seal(source, sequence, built)
