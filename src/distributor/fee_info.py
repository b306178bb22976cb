"""Fee escalation snapshot used to price transfers by delivery tier."""

from dataclasses import dataclass

from distributor.constants import FeeTier


@dataclass
class FeeInfo:
    """Result of rippled's `fee` command.

    Fee values are drops. `current_ledger_size` and `current_queue_size` move with
    every transaction, so fetch a fresh one per priced transfer instead of caching.
    """

    expected_ledger_size: int
    current_ledger_size: int
    current_queue_size: int
    max_queue_size: int
    base_fee: int
    median_fee: int
    minimum_fee: int  # cheapest fee that still gets into the queue
    open_ledger_fee: int  # skips the queue
    ledger_current_index: int

    @classmethod
    def from_fee_result(cls, result: dict) -> "FeeInfo":
        drops = result["drops"]
        return cls(
            expected_ledger_size=int(result["expected_ledger_size"]),
            current_ledger_size=int(result["current_ledger_size"]),
            current_queue_size=int(result["current_queue_size"]),
            max_queue_size=int(result["max_queue_size"]),
            base_fee=int(drops["base_fee"]),
            median_fee=int(drops["median_fee"]),
            minimum_fee=int(drops["minimum_fee"]),
            open_ledger_fee=int(drops["open_ledger_fee"]),
            ledger_current_index=int(result["ledger_current_index"]),
        )

    def for_tier(self, tier: FeeTier) -> int:
        """Per-transaction fee in drops for a priority tier. Never below the base fee."""
        match FeeTier(tier):
            case FeeTier.HIGH:
                fee = self.open_ledger_fee
            case FeeTier.MEDIUM:
                fee = self.median_fee
            case _:
                fee = self.minimum_fee
        return max(fee, self.base_fee)

    @property
    def escalated(self) -> bool:
        return self.minimum_fee > self.base_fee
