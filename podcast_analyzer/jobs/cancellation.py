"""Cooperative cancellation: job id -> "still wanted" flag plus an optional abort handle for the stage currently running."""
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Set

logger = logging.getLogger(__name__)


class AbortHandle(Protocol):
    def cancel(self) -> None:
        ...


@dataclass
class CancellationEntry:
    wanted: bool = True
    handle: Optional[AbortHandle] = None


class CancellationRegistry:
    """Table of in-flight jobs that stage adapters consult at their checkpoints.
    Why available: Lets DELETE /jobs/{id} stop a running pipeline without preempting it; constructed per app so tests never share state.

    A missing entry means "nothing to cancel" (never started or already finished): is_wanted() answers True for it.
    """

    def __init__(self):
        self._entries: Dict[str, CancellationEntry] = {}

    def register(self, job_id: str) -> None:
        self._entries[job_id] = CancellationEntry()

    def is_registered(self, job_id: str) -> bool:
        return job_id in self._entries

    def is_wanted(self, job_id: str) -> bool:
        entry = self._entries.get(job_id)
        return entry is None or entry.wanted

    def cancel(self, job_id: str) -> bool:
        """Flag the job as unwanted and fire the attached abort handle, if any. Returns False when there is nothing left to cancel
        (unknown, finished, or already cancelled), so a second cancel is a no-op."""
        entry = self._entries.get(job_id)
        if entry is None or not entry.wanted:
            return False
        entry.wanted = False
        handle, entry.handle = entry.handle, None
        if handle is not None:
            try:
                handle.cancel()
            except Exception:
                # abort is best effort; the adapter's next checkpoint still sees wanted=False
                logger.exception("abort_handle_failed", extra={"job_id": job_id})
        return True

    def attach(self, job_id: str, handle: AbortHandle) -> None:
        """Register the running adapter's abort handle. No-op for unregistered jobs."""
        entry = self._entries.get(job_id)
        if entry is not None:
            entry.handle = handle

    def detach(self, job_id: str) -> None:
        entry = self._entries.get(job_id)
        if entry is not None:
            entry.handle = None

    def clear(self, job_id: str) -> None:
        self._entries.pop(job_id, None)


class ActiveRuns:
    """Ids of sessions with an orchestrator run in progress; guards against two concurrent runs on one session."""

    def __init__(self):
        self._active: Set[str] = set()

    def try_acquire(self, session_id: str) -> bool:
        if session_id in self._active:
            return False
        self._active.add(session_id)
        return True

    def release(self, session_id: str) -> None:
        self._active.discard(session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active
