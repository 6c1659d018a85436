"""Bounded, reservoir-sampled mirror of the ledger accounts the sampler drives.

The store never holds more than ``capacity`` records. Once full, every new
account replaces a uniformly chosen resident with probability
``capacity / seen`` (Algorithm R), so the sample stays representative of the
whole population rather than of its first ``capacity`` members.

Balances and sequences are only written through the store's mutators. Between
``begin()`` and ``end()`` those writes are journaled so ``reject()`` can undo a
half-built generation round.
"""

import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from itertools import count

from xrpl import CryptoAlgorithm
from xrpl.constants import XRPLException
from xrpl.core.addresscodec import encode_seed
from xrpl.wallet import Wallet

import sampler.constants as C
from sampler.ledger import AccountNotFound, LedgerError

log = logging.getLogger("sampler.accounts")

SequenceFetcher = Callable[[str], Awaitable[int]]
AccountFetcher = Callable[[str], Awaitable[int]]


class BootstrapError(RuntimeError):
    """The root account could not be loaded. The run cannot continue."""


@dataclass(frozen=True, slots=True)
class Unresolved:
    fetch: SequenceFetcher


@dataclass(frozen=True, slots=True)
class Resolved:
    value: int


SequenceState = Unresolved | Resolved


def advance_sequence(state: SequenceState, fetched: int | None) -> SequenceState:
    """Transition for a sequence state after a fetch attempt.

    A resolved state is final. An unresolved one resolves only on a live
    (non-zero) sequence; a missing account keeps it unresolved so the next read
    asks the node again.
    """
    if isinstance(state, Resolved):
        return state
    if fetched:
        return Resolved(fetched)
    return state


@dataclass(slots=True, eq=False)
class AccountRecord:
    address: str
    wallet: Wallet | None = None
    balance: int = 0
    sequence: SequenceState | None = None
    is_root: bool = False

    @classmethod
    def from_wallet(cls, wallet: Wallet, balance: int = 0, sequence: int | None = None, **kw) -> "AccountRecord":
        state = Resolved(sequence) if sequence is not None else None
        return cls(address=wallet.address, wallet=wallet, balance=balance, sequence=state, **kw)

    @property
    def known_sequence(self) -> int | None:
        """Cached sequence, or None when it has not been fetched yet."""
        if isinstance(self.sequence, Resolved):
            return self.sequence.value
        return None

    def snapshot(self) -> dict:
        return {
            "address": self.address,
            "balance": self.balance,
            "sequence": self.known_sequence,
            "resolved": isinstance(self.sequence, Resolved),
            "is_root": self.is_root,
        }

    def __str__(self):
        return f"{self.address} -- {self.balance} -- seq={self.known_sequence}"


async def current_sequence(record: AccountRecord) -> int:
    """Read a record's sequence, fetching it from the node on first read.

    Returns 0 for an account the node does not know yet.
    """
    state = record.sequence
    if state is None:
        return 0
    if isinstance(state, Resolved):
        return state.value
    try:
        fetched = await state.fetch(record.address)
    except AccountNotFound:
        log.debug("%s not on ledger yet", record.address)
        fetched = None
    record.sequence = advance_sequence(state, fetched)
    return fetched or 0


_BALANCE = "balance"
_SEQUENCE = "sequence"


class AccountStore:
    def __init__(
        self,
        fetch_sequence: SequenceFetcher,
        *,
        capacity: int = C.DEFAULT_CAPACITY,
        rng: random.Random | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.rng = rng or random.Random()
        self._fetch_sequence = fetch_sequence
        self._ordered: list[AccountRecord] = []
        self._by_address: dict[str, AccountRecord] = {}
        self.seen = 0  # every distinct insertion, admitted or not
        self._journal: list[tuple] | None = None

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, address: str) -> bool:
        return address in self._by_address

    def count(self) -> int:
        return len(self._ordered)

    def accounts(self) -> Iterator[AccountRecord]:
        return iter(self._ordered)

    def get_by_order(self, index: int) -> AccountRecord:
        return self._ordered[index]

    def get_by_address(self, address: str) -> AccountRecord | None:
        return self._by_address.get(address)

    def random_account(self, rng: random.Random | None = None) -> AccountRecord | None:
        if not self._ordered:
            return None
        return self._ordered[(rng or self.rng).randrange(len(self._ordered))]

    def add_account(self, record: AccountRecord) -> AccountRecord | None:
        """Insert a record, returning the record it evicted (if any).

        Re-adding a tracked address credits the incoming balance to the resident
        record (it was funded again) and takes its sequence and keys; no second
        slot is used.
        """
        if record.sequence is None:
            record.sequence = Unresolved(self._fetch_sequence)

        resident = self._by_address.get(record.address)
        if resident is not None:
            self.adjust_balance(resident, record.balance)
            if isinstance(record.sequence, Resolved):
                self._swap_sequence(resident, record.sequence)
            if record.wallet is not None:
                resident.wallet = record.wallet
            return None

        self.seen += 1
        if len(self._ordered) < self.capacity:
            self._ordered.append(record)
            self._by_address[record.address] = record
            return None

        slot = self.rng.randint(0, self.seen - 1)
        if slot >= self.capacity:
            log.debug("Reservoir skipped %s (slot %s)", record.address, slot)
            return None

        evicted = self._ordered[slot]
        del self._by_address[evicted.address]
        self._ordered[slot] = record
        self._by_address[record.address] = record
        log.debug("Reservoir evicted %s for %s", evicted.address, record.address)
        return evicted

    # =========================================================================
    # Mutators - all balance/sequence writes go through here
    # =========================================================================

    def adjust_balance(self, record: AccountRecord, delta: int) -> None:
        record.balance += delta
        if self._journal is not None:
            self._journal.append((_BALANCE, record, delta))

    def set_balance(self, record: AccountRecord, value: int) -> None:
        self.adjust_balance(record, value - record.balance)

    def _swap_sequence(self, record: AccountRecord, state: SequenceState) -> None:
        if self._journal is not None:
            self._journal.append((_SEQUENCE, record, record.sequence))
        record.sequence = state

    def set_sequence(self, record: AccountRecord, value: int) -> None:
        self._swap_sequence(record, Resolved(value))

    def observe_sequence(self, record: AccountRecord, value: int) -> None:
        """Record a sequence seen on the ledger; a resolved sequence never moves back."""
        known = record.known_sequence
        if known is not None and value <= known:
            return
        self.set_sequence(record, value)

    def invalidate_sequence(self, record: AccountRecord) -> None:
        """Forget the cached sequence so the next read fetches it again."""
        self._swap_sequence(record, Unresolved(self._fetch_sequence))

    # =========================================================================
    # Transaction brackets
    # =========================================================================

    @property
    def in_transaction(self) -> bool:
        return self._journal is not None

    def begin(self) -> None:
        if self._journal is not None:
            raise RuntimeError("AccountStore.begin() called inside an open bracket")
        self._journal = []

    def end(self) -> int:
        """Keep every change since begin(). Returns how many were journaled."""
        if self._journal is None:
            raise RuntimeError("AccountStore.end() without begin()")
        kept = len(self._journal)
        self._journal = None
        return kept

    def reject(self) -> int:
        """Undo every change since begin(), newest first."""
        if self._journal is None:
            raise RuntimeError("AccountStore.reject() without begin()")
        journal, self._journal = self._journal, None
        for kind, record, value in reversed(journal):
            if kind == _BALANCE:
                record.balance -= value
            else:
                record.sequence = value
        log.debug("Rolled back %s journaled changes", len(journal))
        return len(journal)

    def snapshot(self) -> dict:
        return {
            "count": len(self._ordered),
            "capacity": self.capacity,
            "seen": self.seen,
            "resolved": sum(1 for r in self._ordered if isinstance(r.sequence, Resolved)),
        }


async def add_root_account(
    store: AccountStore,
    fetch_account: AccountFetcher,
    fetch_sequence: SequenceFetcher,
    *,
    seed: str = C.ROOT["seed"],
    algorithm: CryptoAlgorithm = CryptoAlgorithm.SECP256K1,
) -> AccountRecord:
    """Load the funding root from the ledger and make it the store's first record."""
    try:
        wallet = Wallet.from_seed(seed, algorithm=algorithm)
        balance = await fetch_account(wallet.address)
        sequence = await fetch_sequence(wallet.address)
    except (LedgerError, XRPLException, ValueError) as e:
        raise BootstrapError(f"Unable to add the root account: {e}") from e

    root = store.get_by_address(wallet.address)
    if root is not None:
        # reloading: the ledger balance replaces ours
        store.set_balance(root, balance)
        store.set_sequence(root, sequence)
    else:
        root = AccountRecord.from_wallet(wallet, balance=balance, sequence=sequence, is_root=True)
        store.add_account(root)
    log.info("Root account %s balance=%s seq=%s", root.address, balance, sequence)
    return root


class KeyAllocator:
    """Hands out never-used keys for create-account operations.

    ``counter`` mode maps an increasing index to seed entropy, so a run with the
    same offset reproduces the same addresses. ``random`` mode draws fresh keys.
    """

    def __init__(
        self,
        mode: C.KeyMode | str = C.KeyMode.RANDOM,
        *,
        offset: int = 0,
        algorithm: CryptoAlgorithm = CryptoAlgorithm.ED25519,
    ) -> None:
        self.mode = C.KeyMode(mode)
        self.algorithm = algorithm
        self._index = count(offset + 1)

    def next_wallet(self) -> Wallet:
        if self.mode is C.KeyMode.COUNTER:
            entropy = next(self._index).to_bytes(16, "little")
            return Wallet.from_seed(encode_seed(entropy, self.algorithm), algorithm=self.algorithm)
        return Wallet.create(algorithm=self.algorithm)
