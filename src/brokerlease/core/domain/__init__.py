from brokerlease.core.domain.lease import LEASE_ROW_ID, LeaseRow, LeaseState

__all__ = ["LEASE_ROW_ID", "LeaseRow", "LeaseState"]
