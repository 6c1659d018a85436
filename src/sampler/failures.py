"""Walk validated ledgers and pick out transactions that did not succeed."""

import logging
from collections.abc import AsyncIterator, Callable

from sampler.ledger import LedgerClient, LedgerError

log = logging.getLogger("sampler.failures")


def _parts(entry: dict) -> tuple[dict, dict]:
    """Split an expanded ledger transaction into (tx fields, meta) for either API version."""
    meta = entry.get("meta") or entry.get("metaData") or {}
    tx = entry.get("tx_json") or entry
    return tx, meta if isinstance(meta, dict) else {}


def is_failed(entry: dict) -> bool:
    _, meta = _parts(entry)
    return meta.get("TransactionResult", "tesSUCCESS") != "tesSUCCESS"


async def iter_transactions(ledger: LedgerClient, from_ledger: int, to_ledger: int) -> AsyncIterator[tuple[int, dict]]:
    """Every transaction of ledgers ``from_ledger..to_ledger`` (inclusive), with its ledger index."""
    for index in range(from_ledger, to_ledger + 1):
        try:
            txs = await ledger.ledger_transactions(index)
        except LedgerError as e:
            log.error("error while downloading transactions of ledger %s: %s", index, e)
            raise
        for entry in txs:
            yield index, entry


async def iter_failed_transactions(
    ledger: LedgerClient,
    from_ledger: int,
    to_ledger: int,
    *,
    accounts: set[str] | None = None,
    predicate: Callable[[dict], bool] = is_failed,
) -> AsyncIterator[dict]:
    """Failures in the ledger range, optionally only those sent by ``accounts``."""
    async for index, entry in iter_transactions(ledger, from_ledger, to_ledger):
        if not predicate(entry):
            continue
        failure = describe_failure(entry, index)
        if accounts is not None and failure["account"] not in accounts:
            continue
        yield failure


def _affected_accounts(meta: dict) -> list[str]:
    accounts = set()
    for node in meta.get("AffectedNodes", []):
        for change in node.values():
            if change.get("LedgerEntryType") != "AccountRoot":
                continue
            fields = change.get("FinalFields") or change.get("NewFields") or {}
            if fields.get("Account"):
                accounts.add(fields["Account"])
    return sorted(accounts)


def describe_failure(entry: dict, ledger_index: int | None = None) -> dict:
    tx, meta = _parts(entry)
    return {
        "ledger_index": ledger_index or entry.get("ledger_index"),
        "hash": entry.get("hash") or tx.get("hash"),
        "account": tx.get("Account"),
        "transaction_type": tx.get("TransactionType"),
        "sequence": tx.get("Sequence"),
        "fee": tx.get("Fee"),
        "result": meta.get("TransactionResult"),
        "affected_accounts": _affected_accounts(meta),
    }


async def find_failed_transactions(
    ledger: LedgerClient,
    to_ledger: int,
    from_ledger: int = 1,
    *,
    accounts: set[str] | None = None,
    limit: int | None = None,
) -> list[dict]:
    failures: list[dict] = []
    async for failure in iter_failed_transactions(ledger, from_ledger, to_ledger, accounts=accounts):
        failures.append(failure)
        if limit is not None and len(failures) >= limit:
            break
    if not failures:
        log.info("no tx error in ledgers %s..%s", from_ledger, to_ledger)
    return failures
