"""Deferred application of speculative state.

An admitted candidate sits in ``waiting`` for one tick, then in ``committed``
for the next ``process()`` pass, which learns its outcome from the ledger and
resolves it exactly once.
"""

import asyncio
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field

from xrpl.wallet import Wallet

from sampler.accounts import AccountRecord, AccountStore
from sampler.constants import Outcome
from sampler.ledger import ConfirmationTimeout, PollCancelled, Submission, engine_result_of
from sampler.txn_factory.generator import Candidate

log = logging.getLogger("sampler.commit")


@dataclass
class PendingCommit:
    candidate: Candidate
    submission: Submission
    created_at: float = field(default_factory=time.time)

    @property
    def tx_hash(self) -> str:
        return self.submission.tx_hashes[0]

    def describe(self) -> dict:
        return {
            "tx_hash": self.tx_hash,
            "engine_result": self.submission.result.engine_result,
            "created_at": self.created_at,
            **self.candidate.describe(),
        }


@dataclass(frozen=True)
class Confirmation:
    sequence: int | None = None
    records: list[dict] | None = None
    timed_out: bool = False
    cancelled: bool = False


def _balance_delta(kind: str, entry: dict) -> int:
    """Drops a transaction moved into (positive) or out of an AccountRoot."""
    if kind == "CreatedNode":
        return int((entry.get("NewFields") or {}).get("Balance", 0))
    previous = (entry.get("PreviousFields") or {}).get("Balance")
    if previous is None:
        return 0
    return int(entry["FinalFields"]["Balance"]) - int(previous)


def apply_transaction_records(
    store: AccountStore,
    records: list[dict],
    wallets: dict[str, Wallet] | None = None,
) -> int:
    """Replay the AccountRoot changes of validated transactions into the store.

    Each balance moves by the transaction's own diff (final minus previous), so
    debits of other candidates still pending on the same account survive.
    Sequences only move forward. Accounts created by these transactions are
    inserted when we hold their keys. Returns the number of records touched.
    """
    wallets = wallets or {}
    touched = 0
    for record in records:
        meta = record.get("meta") or record.get("metaData") or {}
        for node in meta.get("AffectedNodes", []):
            for kind in ("CreatedNode", "ModifiedNode"):
                entry = node.get(kind)
                if entry is None or entry.get("LedgerEntryType") != "AccountRoot":
                    continue
                fields = entry.get("FinalFields") or entry.get("NewFields") or {}
                address = fields.get("Account")
                if address is None:
                    continue
                delta = _balance_delta(kind, entry)
                sequence = fields.get("Sequence")

                account = store.get_by_address(address)
                if account is None:
                    wallet = wallets.get(address)
                    if kind == "CreatedNode" and wallet is not None:
                        store.add_account(
                            AccountRecord.from_wallet(
                                wallet,
                                balance=delta,
                                sequence=int(sequence) if sequence else None,
                            )
                        )
                        touched += 1
                    continue

                if delta:
                    store.adjust_balance(account, delta)
                if sequence is not None:
                    store.observe_sequence(account, int(sequence))
                touched += 1
    return touched


class CommitQueue:
    def __init__(
        self,
        store: AccountStore,
        *,
        verify_results: bool = True,
        stop: asyncio.Event | None = None,
        history: int = 200,
    ) -> None:
        self.store = store
        self.verify_results = verify_results
        self.stop = stop
        self.committed: deque[PendingCommit] = deque()
        self.waiting: deque[PendingCommit] = deque()
        self.counts: Counter[Outcome] = Counter()
        self.recent: deque[dict] = deque(maxlen=history)

    def __len__(self) -> int:
        return len(self.committed) + len(self.waiting)

    def add(self, pending: PendingCommit) -> None:
        self.waiting.append(pending)

    async def _confirm(self, pending: PendingCommit) -> Confirmation:
        sub = pending.submission
        try:
            if self.verify_results:
                return Confirmation(records=await sub.wait_for_results(self.stop))
            return Confirmation(sequence=await sub.wait_for_sequence(self.stop))
        except PollCancelled:
            return Confirmation(cancelled=True)
        except ConfirmationTimeout as e:
            log.warning("%s: %s", pending.tx_hash, e)
        except Exception:
            log.exception("Confirming %s failed", pending.tx_hash)
        return Confirmation(records=await sub.lookup_results(), timed_out=True)

    def _resolve(self, pending: PendingCommit, conf: Confirmation) -> Outcome:
        cand = pending.candidate
        store = self.store

        if conf.cancelled:
            outcome = Outcome.CANCELLED
        elif conf.sequence is not None:
            cand.commit()
            store.observe_sequence(cand.source, conf.sequence)
            outcome = Outcome.COMMITTED
        elif conf.records:
            results = [engine_result_of(r) for r in conf.records]
            complete = len(conf.records) == len(pending.submission.tx_hashes)
            if complete and all(r == "tesSUCCESS" for r in results):
                cand.commit()
                store.observe_sequence(cand.source, cand.next_sequence)
                outcome = Outcome.COMMITTED
            else:
                log.warning(
                    "Reconciling %s from %s amount=%s results=%s",
                    pending.tx_hash,
                    cand.source.address,
                    cand.amount,
                    results,
                )
                # drop our guess, then take the ledger's diff in its place
                cand.reject()
                apply_transaction_records(store, conf.records, cand.new_wallets)
                store.invalidate_sequence(cand.source)
                outcome = Outcome.RECONCILED
        else:
            log.warning(
                "Rolling back %s from %s amount=%s%s",
                pending.tx_hash,
                cand.source.address,
                cand.amount,
                " (timed out)" if conf.timed_out else "",
            )
            cand.reject()
            store.invalidate_sequence(cand.source)
            outcome = Outcome.ROLLED_BACK

        self.counts[outcome] += 1
        self.recent.append({"outcome": str(outcome), "timed_out": conf.timed_out, **pending.describe()})
        return outcome

    async def process(self) -> list[Outcome]:
        """Resolve everything in ``committed`` in FIFO order, then promote ``waiting``.

        Confirmation polls run concurrently; nothing is applied until all of them
        have finished, so store writes keep submission order.
        """
        entries = list(self.committed)
        self.committed.clear()
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(self._confirm(p)) for p in entries]
        outcomes = [self._resolve(p, t.result()) for p, t in zip(entries, tasks)]
        self.committed, self.waiting = self.waiting, deque()
        if outcomes:
            log.debug("Resolved %s: %s", len(outcomes), Counter(outcomes))
        return outcomes

    async def drain(self, max_rounds: int | None = None) -> list[Outcome]:
        """Process until nothing is pending (or ``max_rounds`` passes ran)."""
        outcomes: list[Outcome] = []
        rounds = 0
        while self.committed or self.waiting:
            if max_rounds is not None and rounds >= max_rounds:
                break
            if self.stop is not None and self.stop.is_set():
                break
            outcomes += await self.process()
            rounds += 1
        return outcomes

    def pending(self) -> list[dict]:
        return [p.describe() for p in (*self.committed, *self.waiting)]

    def snapshot(self) -> dict:
        return {
            "committed": len(self.committed),
            "waiting": len(self.waiting),
            "verify_results": self.verify_results,
            "counts": {str(o): self.counts.get(o, 0) for o in Outcome},
        }


__all__ = ["CommitQueue", "Confirmation", "PendingCommit", "apply_transaction_records"]
