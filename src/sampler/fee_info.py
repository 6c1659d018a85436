"""Fee and reserve schedule the generator budgets against."""

from dataclasses import dataclass

import sampler.constants as C


@dataclass(frozen=True)
class FeeSchedule:
    """Base fee and account reserve of the validated ledger.

    All values are in drops. ``reserve`` is the base reserve, the least an
    account may hold and the least a create-account payment must deliver.
    """

    base_fee: int = C.DEFAULT_BASE_FEE  # drops
    reserve: int = C.DEFAULT_RESERVE  # drops
    batch_overhead_units: int = C.BATCH_OVERHEAD_UNITS
    ledger_index: int = 0

    @property
    def minimum_operation_cost(self) -> int:
        """Least a single operation can be budgeted: its fee plus a reserve's worth of value."""
        return self.base_fee + self.reserve

    def batch_overhead(self, operations: int) -> int:
        """Extra fee a multi-operation transaction pays on top of its operations' fees."""
        if operations <= 1:
            return 0
        return self.base_fee * self.batch_overhead_units

    def transaction_fee(self, operations: int) -> int:
        return self.base_fee * operations + self.batch_overhead(operations)

    @classmethod
    def from_server_state(cls, result: dict, fallback: "FeeSchedule | None" = None) -> "FeeSchedule":
        """Parse a ``server_state`` result.

        Args:
            result: The 'result' field from xrpl.models.requests.ServerState
            fallback: Values used for anything the node did not report

        Returns:
            FeeSchedule of the last validated ledger
        """
        fallback = fallback or cls()
        validated = result.get("state", {}).get("validated_ledger") or {}
        return cls(
            base_fee=int(validated.get("base_fee", fallback.base_fee)),
            reserve=int(validated.get("reserve_base", fallback.reserve)),
            batch_overhead_units=fallback.batch_overhead_units,
            ledger_index=int(validated.get("seq", 0)),
        )

    def as_dict(self) -> dict:
        return {
            "base_fee": self.base_fee,
            "reserve": self.reserve,
            "batch_overhead_units": self.batch_overhead_units,
            "ledger_index": self.ledger_index,
            "minimum_operation_cost": self.minimum_operation_cost,
        }
