from __future__ import annotations

from abc import ABC, abstractmethod


class SyncMetrics(ABC):
    """Observability hooks the sync core reports into."""

    @abstractmethod
    def cycle_started(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def cycle_finished(
        self, duration_s: float, success: bool, processed: int, succeeded: int, failed: int
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def integration_started(self, integration_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def integration_succeeded(
        self, integration_id: str, duration_s: float, events_processed: int
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def integration_failed(self, integration_id: str, duration_s: float, category: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def api_call(self, operation: str, duration_s: float, success: bool) -> None:
        raise NotImplementedError

    @abstractmethod
    def rate_limit_hit(self, source: str) -> None:
        """source is 'local' (our limiter waited) or 'remote' (HTTP 429)."""
        raise NotImplementedError

    @abstractmethod
    def error(self, category: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def event_processed(self, action: str) -> None:
        raise NotImplementedError


class NullSyncMetrics(SyncMetrics):
    def cycle_started(self) -> None:
        pass

    def cycle_finished(self, duration_s, success, processed, succeeded, failed) -> None:
        pass

    def integration_started(self, integration_id) -> None:
        pass

    def integration_succeeded(self, integration_id, duration_s, events_processed) -> None:
        pass

    def integration_failed(self, integration_id, duration_s, category) -> None:
        pass

    def api_call(self, operation, duration_s, success) -> None:
        pass

    def rate_limit_hit(self, source) -> None:
        pass

    def error(self, category) -> None:
        pass

    def event_processed(self, action) -> None:
        pass
