from typing import Final
from enum import StrEnum

# Genesis account of a fresh rippled network. Holds every drop at ledger 1.
root_account: Final = {
    "address": "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh",
    "seed": "snoPBrXtMeMyMHUVTgbuqAfg1SUTb",
}

ROOT = root_account


class OperationKind(StrEnum):
    CREATE_ACCOUNT = "CreateAccount"
    PAYMENT        = "Payment"


class Outcome(StrEnum):
    COMMITTED   = "COMMITTED"
    RECONCILED  = "RECONCILED"
    ROLLED_BACK = "ROLLED_BACK"
    CANCELLED   = "CANCELLED"


class KeyMode(StrEnum):
    RANDOM  = "random"
    COUNTER = "counter"


# Engine results that mean the node took the transaction (sequence consumed or queued)
ACCEPTED_PREFIXES = ("tes", "tec")
ACCEPTED_RESULTS = frozenset({"terQUEUED"})
# Rejections caused by our cached sequence being wrong
SEQUENCE_RESULTS = frozenset({"tefPAST_SEQ", "terPRE_SEQ"})
UNCERTAIN_RESULT = "uncertain"

DEFAULT_CAPACITY = 1_000_000
DEFAULT_BASE_FEE = 10  # drops
DEFAULT_RESERVE = 1_000_000  # drops
BATCH_OVERHEAD_UNITS = 2  # Batch outer txn pays two base fees on top of its inner txns
MAX_OPERATIONS_PER_TXN = 8  # Batch inner transaction limit
MAX_SELECTION_ATTEMPTS = 32
WEIGHT_SCALE = 100

HORIZON = 15  # Transactions expire if not validated within 15 ledgers
RPC_TIMEOUT = 2.0
SUBMIT_TIMEOUT = 20
CONFIRM_TIMEOUT = 90.0  # must outlast HORIZON ledgers so a timeout means the txn expired
BACKOFF_INITIAL = 0.25
BACKOFF_FACTOR = 2.0
BACKOFF_MAX = 2.0

__all__ = [
    "ACCEPTED_PREFIXES",
    "ACCEPTED_RESULTS",
    "BACKOFF_FACTOR",
    "BACKOFF_INITIAL",
    "BACKOFF_MAX",
    "BATCH_OVERHEAD_UNITS",
    "CONFIRM_TIMEOUT",
    "DEFAULT_BASE_FEE",
    "DEFAULT_CAPACITY",
    "DEFAULT_RESERVE",
    "HORIZON",
    "MAX_OPERATIONS_PER_TXN",
    "MAX_SELECTION_ATTEMPTS",
    "ROOT",
    "RPC_TIMEOUT",
    "SEQUENCE_RESULTS",
    "SUBMIT_TIMEOUT",
    "UNCERTAIN_RESULT",
    "WEIGHT_SCALE",

    ######
    "KeyMode",
    "OperationKind",
    "Outcome",
]
