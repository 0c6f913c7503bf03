import time
from collections import deque
from typing import Deque, Dict

from fastapi import HTTPException
from starlette.requests import Request


class SimpleRateLimiter:
    """Sliding-window limiter keyed by client IP; in-memory, per process.
    Why available: Polling clients hit GET /jobs/{id} in a loop; this keeps one misbehaving client from starving the event loop."""

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = time.monotonic()

    def check(self, request: Request) -> None:
        """Raise 429 once the client has used up its window; otherwise record this request."""
        now = time.monotonic()
        self._sweep(now)
        ip = request.client.host if request.client else "unknown"
        hits = self._hits.setdefault(ip, deque())
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        if len(hits) >= self.max_requests:
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded. Please retry later.",
            )
        hits.append(now)

    def _sweep(self, now: float) -> None:
        """At most once per window, forget clients whose newest hit has left the window."""
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for ip in [ip for ip, hits in self._hits.items() if not hits or now - hits[-1] >= self.window_seconds]:
            del self._hits[ip]
