from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .errors import GuardError, TimeSyncUnavailable


logger = logging.getLogger("steamguard.time")


class TimeSource:
    """
    Adjusted clock: local wall clock plus the drift measured against the platform.

    Drift is fetched lazily on the first `now()` and then cached for the life
    of the object. If that implicit sync fails the last-known drift (zero at
    first) is kept so code generation can proceed; `resync()` is the explicit
    form and raises TimeSyncUnavailable instead.

    `query` returns the platform's current time in whole seconds. With no
    query the source never syncs, which is how tests pin time.
    """

    def __init__(
        self,
        query: Optional[Callable[[], int]] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._query = query
        self._clock = clock
        self._drift: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def drift(self) -> int:
        return self._drift or 0

    @property
    def synced(self) -> bool:
        return self._drift is not None

    def now(self) -> int:
        if self._drift is None and self._query is not None:
            try:
                self.resync()
            except TimeSyncUnavailable:
                logger.warning("time sync failed; continuing with drift=%ds", self.drift)
                with self._lock:
                    if self._drift is None:
                        self._drift = 0
        return int(self._clock()) + self.drift

    def resync(self) -> int:
        """Force a refetch of the drift; returns the new drift in seconds."""
        if self._query is None:
            raise TimeSyncUnavailable("no time query configured")
        before = self._clock()
        try:
            server_time = int(self._query())
        except TimeSyncUnavailable:
            raise
        except (GuardError, ValueError, TypeError) as exc:
            raise TimeSyncUnavailable(f"time query failed: {exc}") from exc
        after = self._clock()
        # Midpoint of the round trip approximates the instant the server answered.
        local = (before + after) / 2.0
        drift = int(round(server_time - local))
        with self._lock:
            self._drift = drift
        logger.debug("time synced: drift=%ds", drift)
        return drift


def transport_time_query(transport) -> Callable[[], int]:
    """Adapt RpcTransport's TwoFactor/QueryTime into a TimeSource query."""
    from .protobufs import new_message

    def _query() -> int:
        req = new_message("CTwoFactor_Time_Request")
        req.sender_time = int(time.time())
        try:
            resp = transport.call("TwoFactor", "QueryTime", req)
        except GuardError as exc:
            raise TimeSyncUnavailable(str(exc)) from exc
        if not resp.server_time:
            raise TimeSyncUnavailable("time endpoint returned no server_time")
        return int(resp.server_time)

    return _query


__all__ = ["TimeSource", "transport_time_query"]
