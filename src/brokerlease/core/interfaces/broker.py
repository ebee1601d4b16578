"""Host broker interfaces used by the locker and the failure handler."""

from abc import ABC, abstractmethod

from brokerlease.core.interfaces.locker import Locker


class Connector(ABC):
    """Externally visible network endpoint of the broker."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...


class Broker(ABC):
    """Host service protected by the locker.

    The locker reports storage failures through handle_io_error; the
    failure handler uses the remaining methods to decide and apply the
    consequences (stop connectors, stop the broker).
    """

    @property
    @abstractmethod
    def broker_name(self) -> str: ...

    @property
    @abstractmethod
    def is_started(self) -> bool: ...

    @property
    @abstractmethod
    def locker(self) -> Locker | None: ...

    @abstractmethod
    async def handle_io_error(self, exc: Exception) -> None:
        """Hand a storage failure to the broker's failure handler."""
        ...

    @abstractmethod
    async def stop_connectors(self) -> None: ...

    @abstractmethod
    async def start_connectors(self) -> None: ...

    @abstractmethod
    async def is_storage_available(self) -> bool: ...

    @abstractmethod
    async def stop(self, reason: Exception | None = None) -> None: ...
