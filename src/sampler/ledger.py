import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.constants import XRPLException
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign
from xrpl.models import Batch, BatchFlag, Payment, SubmitOnly, Transaction, TransactionFlag
from xrpl.models.requests import AccountInfo, Ledger, ServerState, Tx
from xrpl.wallet import Wallet

import sampler.constants as C
from sampler.fee_info import FeeSchedule

if TYPE_CHECKING:
    from sampler.txn_factory.generator import Candidate

log = logging.getLogger("sampler.ledger")

T = TypeVar("T")


class LedgerError(RuntimeError):
    """The node could not be reached or answered with an error."""


class AccountNotFound(LedgerError):
    """The node has no AccountRoot for the address."""


class ConfirmationTimeout(LedgerError):
    """A poll ran past its deadline without seeing the expected ledger state."""


class PollCancelled(LedgerError):
    """The stop event fired while a poll was waiting."""


# =============================================================================
# Polling
# =============================================================================


@dataclass(frozen=True)
class Backoff:
    initial: float = C.BACKOFF_INITIAL
    factor: float = C.BACKOFF_FACTOR
    maximum: float = C.BACKOFF_MAX
    timeout: float = C.CONFIRM_TIMEOUT

    def delays(self) -> Iterator[float]:
        delay = self.initial
        while True:
            yield delay
            delay = min(delay * self.factor, self.maximum)


async def poll(
    check: Callable[[], Awaitable[T | None]],
    backoff: Backoff,
    stop: asyncio.Event | None = None,
    what: str = "condition",
) -> T:
    """Call ``check`` until it returns something other than None.

    Raises ConfirmationTimeout once ``backoff.timeout`` elapses and PollCancelled
    as soon as ``stop`` is set, even in the middle of a backoff wait.
    """
    try:
        async with asyncio.timeout(backoff.timeout):
            for delay in backoff.delays():
                if stop is not None and stop.is_set():
                    raise PollCancelled(what)
                value = await check()
                if value is not None:
                    return value
                if stop is None:
                    await asyncio.sleep(delay)
                    continue
                try:
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                except TimeoutError:
                    continue
                raise PollCancelled(what)
    except TimeoutError as e:
        raise ConfirmationTimeout(f"{what} not seen within {backoff.timeout}s") from e


# =============================================================================
# Envelopes
# =============================================================================


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def _txid_from_signed_blob_hex(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def build_transaction(account: str, sequence: int, operations: list, fee: int) -> Transaction:
    """One operation goes out as a plain Payment, several as an all-or-nothing Batch.

    Batch inner payments take the sequences after the outer one and carry no fee
    or signature of their own.
    """
    if len(operations) == 1:
        op = operations[0]
        return Payment(
            account=account,
            destination=op.destination,
            amount=str(op.amount),
            sequence=sequence,
            fee=str(fee),
        )
    inner = [
        Payment(
            account=account,
            destination=op.destination,
            amount=str(op.amount),
            fee="0",
            signing_pub_key="",
            flags=TransactionFlag.TF_INNER_BATCH_TXN,
            sequence=sequence + i,
        )
        for i, op in enumerate(operations, start=1)
    ]
    return Batch(
        account=account,
        sequence=sequence,
        fee=str(fee),
        flags=BatchFlag.TF_ALL_OR_NOTHING,
        raw_transactions=inner,
    )


def build_envelope(candidate: "Candidate", last_ledger_sequence: int) -> dict:
    """Unsigned transaction JSON for a candidate, expiring after ``last_ledger_sequence``."""
    txn = build_transaction(
        candidate.source.address,
        candidate.sequence,
        [built.operation for built in candidate.operations],
        candidate.fee,
    )
    tx = txn.to_xrpl()
    if tx.get("Flags") == 0:
        del tx["Flags"]
    tx["LastLedgerSequence"] = last_ledger_sequence
    return tx


def sign_envelope(tx: dict, wallet: Wallet) -> tuple[str, str]:
    """Sign transaction JSON in place. Returns the blob hex and its transaction id."""
    tx["SigningPubKey"] = wallet.public_key
    signing_blob = encode_for_signing(tx)
    to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
    tx["TxnSignature"] = sign(to_sign, wallet.private_key)
    signed_blob_hex = encode(tx)
    return signed_blob_hex, _txid_from_signed_blob_hex(signed_blob_hex)


def inner_transaction_hashes(tx: dict) -> list[str]:
    """Ids of a Batch's inner transactions; empty for anything else."""
    return [
        _txid_from_signed_blob_hex(encode(raw["RawTransaction"]))
        for raw in tx.get("RawTransactions", [])
    ]


# =============================================================================
# Submission
# =============================================================================


@dataclass(frozen=True)
class SubmissionResult:
    engine_result: str
    message: str = ""
    tx_hash: str | None = None

    @property
    def uncertain(self) -> bool:
        return self.engine_result == C.UNCERTAIN_RESULT

    @property
    def error(self) -> bool:
        """True when the node refused the transaction outright."""
        if self.uncertain:
            return False
        er = self.engine_result
        return not (er.startswith(C.ACCEPTED_PREFIXES) or er in C.ACCEPTED_RESULTS)

    @property
    def sequence_invalid(self) -> bool:
        return self.engine_result in C.SEQUENCE_RESULTS


@dataclass
class Submission:
    """A submitted envelope and the ways to learn what became of it.

    ``tx_hashes`` lists the outer transaction first, then any batch inner ones.
    """

    result: SubmissionResult
    tx_hashes: list[str]
    wait_for_sequence: Callable[[asyncio.Event | None], Awaitable[int]]
    wait_for_results: Callable[[asyncio.Event | None], Awaitable[list[dict]]]
    lookup_results: Callable[[], Awaitable[list[dict]]]


def engine_result_of(record: dict) -> str | None:
    meta = record.get("meta") or record.get("metaData") or {}
    if isinstance(meta, dict):
        return meta.get("TransactionResult")
    return None


class LedgerClient:
    def __init__(
        self,
        client: AsyncJsonRpcClient,
        *,
        rpc_timeout: float = C.RPC_TIMEOUT,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
        backoff: Backoff | None = None,
        horizon: int = C.HORIZON,
        stop: asyncio.Event | None = None,
        fallback_fees: FeeSchedule | None = None,
    ) -> None:
        self.client = client
        self.rpc_timeout = rpc_timeout
        self.submit_timeout = submit_timeout
        self.backoff = backoff or Backoff()
        self.horizon = horizon
        self.stop = stop
        self.fallback_fees = fallback_fees or FeeSchedule()

    async def _rpc(self, req, *, t: float | None = None):
        try:
            return await asyncio.wait_for(self.client.request(req), timeout=t or self.rpc_timeout)
        except (TimeoutError, httpx.HTTPError, XRPLException, OSError) as e:
            raise LedgerError(f"{req.method} failed: {e!r}") from e

    async def _account_data(self, address: str, ledger_index: str) -> dict:
        r = await self._rpc(AccountInfo(account=address, ledger_index=ledger_index, strict=True))
        if not r.is_successful():
            error = r.result.get("error")
            if error == "actNotFound":
                raise AccountNotFound(address)
            raise LedgerError(f"account_info {address}: {error}")
        return r.result["account_data"]

    async def fetch_sequence(self, address: str) -> int:
        """Next usable sequence, counting transactions already in the open ledger."""
        return int((await self._account_data(address, "current"))["Sequence"])

    async def fetch_validated_sequence(self, address: str) -> int:
        return int((await self._account_data(address, "validated"))["Sequence"])

    async def fetch_account(self, address: str) -> int:
        """Validated balance in drops."""
        return int((await self._account_data(address, "validated"))["Balance"])

    async def fee_schedule(self, fallback: FeeSchedule | None = None) -> FeeSchedule:
        fallback = fallback or self.fallback_fees
        try:
            ss = await self._rpc(ServerState())
        except LedgerError as e:
            log.warning("server_state unavailable, keeping previous fees: %s", e)
            return fallback
        return FeeSchedule.from_server_state(ss.result, fallback)

    async def latest_validated_ledger(self) -> int:
        ss = await self._rpc(ServerState())
        try:
            return int(ss.result["state"]["validated_ledger"]["seq"])
        except (KeyError, TypeError) as e:
            raise LedgerError(f"no validated ledger yet: {ss.result}") from e

    async def transaction_by_hash(self, tx_hash: str) -> dict | None:
        """The validated record for a transaction, or None while it is not in a validated ledger."""
        r = await self._rpc(Tx(transaction=tx_hash))
        if r.is_successful() and r.result.get("validated"):
            return r.result
        return None

    async def ledger_transactions(self, ledger_index: int) -> list[dict]:
        r = await self._rpc(Ledger(ledger_index=ledger_index, transactions=True, expand=True))
        if not r.is_successful():
            raise LedgerError(f"ledger {ledger_index}: {r.result.get('error')}")
        return r.result.get("ledger", {}).get("transactions", [])

    async def submit(self, candidate: "Candidate") -> Submission:
        """Sign and submit a candidate.

        A transport failure does not raise. It yields an uncertain result and
        confirmation decides what happened.
        """
        lls = await self.latest_validated_ledger() + self.horizon
        tx = build_envelope(candidate, lls)
        blob, txid = sign_envelope(tx, candidate.source.wallet)
        hashes = [txid, *inner_transaction_hashes(tx)]

        try:
            resp = await self._rpc(SubmitOnly(tx_blob=blob), t=self.submit_timeout)
            res = resp.result
            er = res.get("engine_result") or res.get("error") or "unknown"
            result = SubmissionResult(er, res.get("engine_result_message", res.get("error_message", "")), txid)
        except LedgerError as e:
            log.warning("submit %s from %s: %s", txid, candidate.source.address, e)
            result = SubmissionResult(C.UNCERTAIN_RESULT, str(e), txid)

        log.debug(
            "submitted %s seq=%s ops=%s fee=%s -> %s",
            candidate.source.address,
            candidate.sequence,
            len(candidate.operations),
            candidate.fee,
            result.engine_result,
        )
        return self._submission(result, candidate.source.address, candidate.sequence, hashes)

    def _submission(self, result: SubmissionResult, account: str, sequence: int, hashes: list[str]) -> Submission:
        async def wait_for_sequence(stop: asyncio.Event | None = None) -> int:
            async def check() -> int | None:
                try:
                    seq = await self.fetch_validated_sequence(account)
                except LedgerError:
                    return None
                return seq if seq > sequence else None

            return await poll(check, self.backoff, stop or self.stop, f"{account} sequence past {sequence}")

        async def lookup(tx_hashes: list[str]) -> list[dict]:
            records = []
            for h in tx_hashes:
                rec = await self.transaction_by_hash(h)
                if rec is not None:
                    records.append(rec)
            return records

        async def wait_for_results(stop: asyncio.Event | None = None) -> list[dict]:
            async def check() -> dict | None:
                try:
                    return await self.transaction_by_hash(hashes[0])
                except LedgerError:
                    return None

            outer = await poll(check, self.backoff, stop or self.stop, f"tx {hashes[0]}")
            try:
                return [outer, *await lookup(hashes[1:])]
            except LedgerError as e:
                log.warning("inner lookup for %s failed: %s", hashes[0], e)
                return [outer]

        async def lookup_results() -> list[dict]:
            try:
                return await lookup(hashes)
            except LedgerError as e:
                log.warning("lookup for %s failed: %s", hashes[0], e)
                return []

        return Submission(result, hashes, wait_for_sequence, wait_for_results, lookup_results)

    def describe(self) -> dict[str, Any]:
        return {
            "url": getattr(self.client, "url", None),
            "horizon": self.horizon,
            "backoff": {"initial": self.backoff.initial, "max": self.backoff.maximum, "timeout": self.backoff.timeout},
        }
