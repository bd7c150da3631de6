"""
Fake collaborators for deterministic testing.

WHAT: Recording relay, failing relay and misbehaving repositories
WHY: Test the service's publish and conflict handling without real infrastructure
HOW: Implement the collaborator protocols / subclass the repository
"""

import threading
from typing import Callable, List

from blindtrade.collaborators.types import RealtimeEvent
from blindtrade.core.repository import NegotiationRepository, SaveResult
from blindtrade.models.negotiation import NegotiationRecord
from blindtrade.utils.exceptions import CollaboratorUnavailableError


class RecordingRelay:
    """Relay that remembers every published event."""

    def __init__(self):
        self.events: List[RealtimeEvent] = []
        self._lock = threading.Lock()

    def publish(self, negotiation_id: str, event: RealtimeEvent) -> int:
        with self._lock:
            self.events.append(event)
        return 1

    def of_type(self, event_type: str) -> List[RealtimeEvent]:
        return [e for e in self.events if e.type == event_type]

    def clear(self):
        with self._lock:
            self.events.clear()


class FailingRelay:
    """Relay whose publish always raises."""

    def __init__(self):
        self.attempts = 0

    def publish(self, negotiation_id: str, event: RealtimeEvent) -> int:
        self.attempts += 1
        raise RuntimeError("relay down")


class InterleavingRepository(NegotiationRepository):
    """
    Repository where another writer commits just before the first save.

    compete receives a plain repository on the same database and plays the
    other process.
    """

    def __init__(self, session_factory, compete: Callable[[NegotiationRepository], None]):
        super().__init__(session_factory)
        self.compete = compete
        self.injected = False
        self.save_results: List[SaveResult] = []

    def save(self, record: NegotiationRecord, expected_version: int) -> SaveResult:
        if not self.injected:
            self.injected = True
            self.compete(NegotiationRepository(self.session_factory))
        result = super().save(record, expected_version)
        self.save_results.append(result)
        return result


class AlwaysConflictRepository(NegotiationRepository):
    """Repository whose versioned saves never win."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.save_calls = 0

    def save(self, record: NegotiationRecord, expected_version: int) -> SaveResult:
        self.save_calls += 1
        return SaveResult.CONFLICT


class BrokenRepository(NegotiationRepository):
    """Repository whose versioned saves fail with a database error."""

    def save(self, record: NegotiationRecord, expected_version: int) -> SaveResult:
        raise CollaboratorUnavailableError("persistence", "disk I/O error")
