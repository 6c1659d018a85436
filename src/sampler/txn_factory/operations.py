from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
import logging
import random

from xrpl.wallet import Wallet

import sampler.constants as C
from sampler.accounts import AccountRecord
from sampler.constants import OperationKind

if TYPE_CHECKING:
    from sampler.txn_factory.generator import TransactionGenerator

log = logging.getLogger("sampler.txn")


@dataclass(slots=True)
class Operation:
    kind: OperationKind
    destination: str
    amount: int  # drops
    wallet: Wallet | None = None  # keys of the account a CreateAccount brings into being


@dataclass(slots=True)
class BuiltOperation:
    operation: Operation
    commit: Callable[[], None]
    reject: Callable[[], None]


Builder = Callable[["TransactionGenerator", AccountRecord, int], Awaitable[BuiltOperation | None]]


@dataclass(slots=True)
class GeneratorEntry:
    builder: Builder
    bias: int
    kind: OperationKind | None = field(default=None)


def choose_weighted(entries: Sequence[GeneratorEntry], rng: random.Random) -> GeneratorEntry | None:
    """CDF walk over a [1, 100] draw. None when the biases add up to less than the draw."""
    draw = rng.randint(1, C.WEIGHT_SCALE)
    cdf = 0
    for entry in entries:
        cdf += entry.bias
        if cdf >= draw:
            return entry
    return None


# =============================================================================
# Builders
# =============================================================================


async def build_create_account(gen: "TransactionGenerator", source: AccountRecord, budget: int) -> BuiltOperation | None:
    """Fund a never-used address with the budget minus the operation's fee."""
    amount = budget - gen.fees.base_fee
    if amount < gen.fees.reserve:
        log.debug("CreateAccount budget %s below reserve %s", budget, gen.fees.reserve)
        return None

    wallet = gen.keys.next_wallet()
    store = gen.store
    store.adjust_balance(source, -amount)

    def commit() -> None:
        store.add_account(AccountRecord.from_wallet(wallet, balance=amount))

    def reject() -> None:
        store.adjust_balance(source, amount)

    return BuiltOperation(Operation(OperationKind.CREATE_ACCOUNT, wallet.address, amount, wallet), commit, reject)


async def build_payment(gen: "TransactionGenerator", source: AccountRecord, budget: int) -> BuiltOperation | None:
    """Pay the budget minus the operation's fee to another live tracked account."""
    destination = await gen.select_account(exclude=source)
    if destination is None:
        log.debug("No payment destination for %s", source.address)
        return None

    amount = budget - gen.fees.base_fee
    store = gen.store
    store.adjust_balance(source, -amount)

    def commit() -> None:
        store.adjust_balance(destination, amount)

    def reject() -> None:
        store.adjust_balance(source, amount)

    return BuiltOperation(Operation(OperationKind.PAYMENT, destination.address, amount), commit, reject)


_BUILDERS: dict[OperationKind, Builder] = {
    OperationKind.CREATE_ACCOUNT: build_create_account,
    OperationKind.PAYMENT: build_payment,
}


def weights_for_population(expected_accounts: int, total_operations: int) -> dict[OperationKind, int]:
    """Bias create-account so that ``total_operations`` ops yield about ``expected_accounts`` accounts."""
    if total_operations <= 0:
        raise ValueError(f"total_operations must be positive, got {total_operations}")
    create = int(expected_accounts / total_operations * C.WEIGHT_SCALE)
    create = max(0, min(C.WEIGHT_SCALE, create))
    log.info("account's probability: %d", create)
    return {
        OperationKind.CREATE_ACCOUNT: create,
        OperationKind.PAYMENT: C.WEIGHT_SCALE - create,
    }


def default_generators(weights: Mapping[str, int]) -> list[GeneratorEntry]:
    """Generator table for ``{kind: bias}``. Biases must add up to 100."""
    entries = []
    for name, bias in weights.items():
        try:
            kind = OperationKind(name)
        except ValueError:
            raise ValueError(f"Unsupported operation kind: {name}") from None
        if bias < 0:
            raise ValueError(f"Negative bias for {kind}: {bias}")
        entries.append(GeneratorEntry(_BUILDERS[kind], int(bias), kind))

    total = sum(e.bias for e in entries)
    if total != C.WEIGHT_SCALE:
        raise ValueError(f"Operation weights must add up to {C.WEIGHT_SCALE}, got {total}")
    return entries
