import asyncio
import logging
import random
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any

from xrpl import CryptoAlgorithm

import sampler.constants as C
from sampler.accounts import AccountRecord, AccountStore, KeyAllocator, add_root_account
from sampler.commit_queue import CommitQueue, PendingCommit
from sampler.constants import Outcome
from sampler.fee_info import FeeSchedule
from sampler.ledger import LedgerClient, LedgerError
from sampler.txn_factory.generator import Candidate, TransactionGenerator
from sampler.txn_factory.operations import default_generators, weights_for_population

log = logging.getLogger("sampler.core")


@dataclass
class SamplerStats:
    generated: int = 0
    skipped: int = 0
    submitted: int = 0
    admission_rejected: int = 0
    errors: int = 0
    committed: int = 0
    reconciled: int = 0
    rolled_back: int = 0
    cancelled: int = 0
    operations: int = 0  # operations in admitted transactions

    def record(self, outcome: Outcome) -> None:
        name = outcome.lower()
        setattr(self, name, getattr(self, name) + 1)

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class Sampler:
    """Generate, submit and reconcile transactions against one node.

    Every store mutation happens on the task driving ``tick()``; the commit
    queue is drained before new candidates are generated within a tick.
    """

    def __init__(
        self,
        config: dict,
        ledger: LedgerClient,
        *,
        rng: random.Random | None = None,
        stop: asyncio.Event | None = None,
    ) -> None:
        self.config = config
        sc = config.get("sampler", {})
        self.rng = rng or random.Random(sc.get("seed"))
        self.stop = stop or ledger.stop or asyncio.Event()
        self.ledger = ledger
        self.ledger.stop = self.stop

        self.tx_rate = int(sc.get("tx_rate", 10))
        self.tick_interval = float(sc.get("tick_interval", 1.0))
        self.total_operations = int(sc.get("total_operations", 1_000_000))

        fees = config.get("fees", {})
        self.fallback_fees = FeeSchedule(
            base_fee=int(fees.get("base_fee", C.DEFAULT_BASE_FEE)),
            reserve=int(fees.get("reserve", C.DEFAULT_RESERVE)),
        )

        self.store = AccountStore(
            ledger.fetch_sequence,
            capacity=int(config.get("store", {}).get("capacity", C.DEFAULT_CAPACITY)),
            rng=self.rng,
        )
        weights = config.get("operations", {}).get("weights") or weights_for_population(
            int(sc.get("expected_accounts", 10_000)), self.total_operations
        )
        self.generator = TransactionGenerator(
            self.store,
            self.fallback_fees,
            default_generators(weights),
            keys=KeyAllocator(sc.get("keys", C.KeyMode.RANDOM), offset=int(sc.get("key_offset", 0))),
            rng=self.rng,
            max_operations=int(sc.get("max_operations", C.MAX_OPERATIONS_PER_TXN)),
            max_selection_attempts=int(sc.get("max_selection_attempts", C.MAX_SELECTION_ATTEMPTS)),
        )
        self.queue = CommitQueue(self.store, verify_results=bool(sc.get("verify_results", True)), stop=self.stop)
        self.stats = SamplerStats()
        self.rejections: deque[dict] = deque(maxlen=200)
        self.root: AccountRecord | None = None

    # =========================================================================
    # Setup
    # =========================================================================

    async def refresh_fees(self) -> FeeSchedule:
        """Re-read fees from the node; whatever it cannot report stays as it was."""
        self.generator.fees = await self.ledger.fee_schedule(self.generator.fees)
        return self.generator.fees

    async def bootstrap(self) -> AccountRecord:
        """Load fees and the root account. Raises BootstrapError when the root is unreachable."""
        await self.refresh_fees()
        ra = self.config.get("root_account", {})
        self.root = await add_root_account(
            self.store,
            self.ledger.fetch_account,
            self.ledger.fetch_sequence,
            seed=ra.get("seed", C.ROOT["seed"]),
            algorithm=CryptoAlgorithm(ra.get("algorithm", "secp256k1")),
        )
        log.info("Fees: %s", self.generator.fees)
        return self.root

    # =========================================================================
    # Transactions
    # =========================================================================

    async def submit_candidate(self, candidate: Candidate) -> bool:
        """Submit a candidate. True when the node admitted it and it was queued."""
        self.stats.generated += 1
        try:
            submission = await self.ledger.submit(candidate)
        except LedgerError as e:
            log.warning("Could not submit %s: %s", candidate, e)
            candidate.reject()
            self.stats.errors += 1
            return False
        except Exception:
            log.exception("Submitting %s failed", candidate)
            candidate.reject()
            self.stats.errors += 1
            return False

        self.stats.submitted += 1
        result = submission.result
        if result.error:
            log.warning(
                "tx submit rejected: %s (%s) from=%s amount=%s fee=%s",
                result.engine_result,
                result.message,
                candidate.source.address,
                candidate.amount,
                candidate.fee,
            )
            candidate.reject()
            if result.sequence_invalid:
                self.store.invalidate_sequence(candidate.source)
            self.stats.admission_rejected += 1
            self.rejections.append(
                {"outcome": "REJECTED", "engine_result": result.engine_result, "tx_hash": result.tx_hash, **candidate.describe()}
            )
            return False

        self.queue.add(PendingCommit(candidate, submission))
        self.stats.operations += len(candidate.operations)
        return True

    async def single_transaction(self) -> int:
        """Generate and submit one candidate. Returns the number of operations admitted."""
        candidate = await self.generator.generate()
        if candidate is None:
            log.debug("unable to generate correct transaction, continuing...")
            self.stats.skipped += 1
            return 0
        if not await self.submit_candidate(candidate):
            return 0
        return len(candidate.operations)

    async def process_queue(self) -> list[Outcome]:
        outcomes = await self.queue.process()
        for outcome in outcomes:
            self.stats.record(outcome)
        return outcomes

    async def drain_queue(self) -> list[Outcome]:
        outcomes = await self.queue.drain()
        for outcome in outcomes:
            self.stats.record(outcome)
        return outcomes

    async def tick(self) -> int:
        """Resolve what is due, then submit up to ``tx_rate`` new candidates."""
        await self.process_queue()
        await self.refresh_fees()

        operations = 0
        for _ in range(self.tx_rate):
            if self.stop.is_set():
                break
            operations += await self.single_transaction()
        return operations

    async def _wait(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self.stop.wait(), timeout=max(delay, 0))
        except TimeoutError:
            pass

    async def run(self, stop: asyncio.Event | None = None) -> SamplerStats:
        """Tick until ``total_operations`` were admitted or ``stop`` is set."""
        if stop is not None:
            self.stop = self.queue.stop = self.ledger.stop = stop
        if self.root is None:
            await self.bootstrap()

        loop = asyncio.get_running_loop()
        log.info("Sampling %s tx/tick up to %s operations", self.tx_rate, self.total_operations)
        while self.stats.operations < self.total_operations and not self.stop.is_set():
            started = loop.time()
            await self.tick()
            await self._wait(self.tick_interval - (loop.time() - started))

        if not self.stop.is_set():
            await self.drain_queue()
        log.info("Sampler finished: %s", self.stats.as_dict())
        return self.stats

    async def initialize_accounts(
        self,
        count: int,
        tx_rate: int | None = None,
        round_interval: float | None = None,
    ) -> int:
        """Fan accounts out from the root before sampling.

        Each round every tracked account (in insertion order) may fund up to a
        transaction's worth of new accounts, keeping ``root balance / count`` for
        itself. Returns the number of accounts created.
        """
        if self.root is None:
            raise RuntimeError("bootstrap() must run before initialize_accounts()")
        if count <= 0:
            return 0
        ic = self.config.get("initializer", {})
        tx_rate = tx_rate or int(ic.get("tx_rate", self.tx_rate))
        round_interval = round_interval if round_interval is not None else float(ic.get("round_interval", 10.0))

        balance_per_account = self.root.balance // count
        per_tx = self.generator.max_operations
        accounts_left, index = count, 0
        while accounts_left > 0 and not self.stop.is_set():
            await self.process_queue()

            submitted = 0
            while submitted < tx_rate and accounts_left > 0 and index < self.store.count():
                source = self.store.get_by_order(index)
                index += 1
                n = min(per_tx, accounts_left)
                starting = (source.balance - balance_per_account - self.generator.fees.transaction_fee(n)) // n
                candidate = await self.generator.build_create_accounts(source, n, starting)
                if candidate is None or not await self.submit_candidate(candidate):
                    continue
                submitted += 1
                accounts_left -= len(candidate.operations)

            if not submitted and not self.queue:
                log.warning("No funded source left, %s accounts not created", accounts_left)
                break
            log.info("Round finished (%s accounts left), waiting for next round...", accounts_left)
            await self._wait(round_interval)

        await self.drain_queue()
        return count - accounts_left

    # =========================================================================
    # Introspection
    # =========================================================================

    def snapshot_stats(self) -> dict[str, Any]:
        return {
            "stats": self.stats.as_dict(),
            "store": self.store.snapshot(),
            "queue": self.queue.snapshot(),
            "fees": self.generator.fees.as_dict(),
            "root": self.root.snapshot() if self.root else None,
            "stopped": self.stop.is_set(),
        }

    def snapshot_account(self, address: str) -> dict | None:
        record = self.store.get_by_address(address)
        return record.snapshot() if record else None

    def snapshot_accounts(self, limit: int = 100, offset: int = 0) -> list[dict]:
        end = min(self.store.count(), offset + limit)
        return [self.store.get_by_order(i).snapshot() for i in range(offset, end)]

    def failed(self) -> list[dict]:
        resolved = [r for r in self.queue.recent if r["outcome"] != str(Outcome.COMMITTED)]
        return [*self.rejections, *resolved]
