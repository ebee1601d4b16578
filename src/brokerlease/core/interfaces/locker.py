"""Locker interface for storage-mediated mastership."""

from abc import ABC, abstractmethod


class Locker(ABC):
    """Abstract base class for a persistence adapter lock.

    Implementations must handle:
    - Atomicity: a single conditional update decides ownership
    - Timeout: bounded wait on every storage call
    - Failure reporting: storage errors go to the host broker, then re-raise
    """

    @property
    @abstractmethod
    def holder_id(self) -> str:
        """Return the identity recorded in the lease when this instance holds it."""
        ...

    @property
    @abstractmethod
    def is_holder(self) -> bool:
        """Return True if the last keep_alive call confirmed ownership."""
        ...

    @abstractmethod
    async def configure(self) -> None:
        """Prepare storage (e.g. create the lock table) before first use."""
        ...

    @abstractmethod
    async def keep_alive(self) -> bool:
        """Claim or extend the lock.

        Returns:
            True if this instance holds the lock after the call.

        Raises:
            LeaseIOError: Storage failure; ownership is unknown.
        """
        ...

    @abstractmethod
    async def release(self) -> bool:
        """Give the lock up if this instance holds it.

        Returns:
            True if a held lock was released.
        """
        ...
