"""Lease domain types."""

from dataclasses import dataclass
from enum import StrEnum

LEASE_ROW_ID = 1


class LeaseState(StrEnum):
    """Lease state of a single holder instance.

    UNCLAIMED -> HOLDING -> FENCED. FENCED is terminal for the run.
    """

    UNCLAIMED = "unclaimed"
    HOLDING = "holding"
    FENCED = "fenced"


@dataclass(frozen=True)
class LeaseRow:
    """Snapshot of the single coordination row.

    expiry is epoch milliseconds in the store clock domain. Both fields are
    None until the first holder claims the row, and after a release.
    """

    id: int
    expiry: int | None
    holder: str | None

    def is_held_by(self, holder_id: str, store_now: int) -> bool:
        return self.holder == holder_id and self.expiry is not None and self.expiry > store_now
