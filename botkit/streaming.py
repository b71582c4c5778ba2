"""
Streaming Module

Two-phase streaming: start() launches generation in a worker thread and
returns a handle; poll() returns the text deltas produced since an offset.
Finished streams are kept for a TTL so late polls still see the full text.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class StreamState:
    """Accumulated output of one stream."""
    handle: str
    created_at: float
    deltas: List[str] = field(default_factory=list)
    done: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    finished_at: Optional[float] = None

    @property
    def text(self) -> str:
        return "".join(self.deltas)


class StreamManager:
    """
    Runs producers of text deltas in a thread pool.

    Example:
        manager = StreamManager()
        handle = manager.start(lambda: llm_client.stream(messages))
        chunk = manager.poll(handle, offset=0)
        # {"deltas": [...], "offset": 3, "done": False, "error": None, ...}
    """

    def __init__(self, max_workers: int = 4, ttl: float = 600, clock: Callable[[], float] = time.time):
        """
        Initialize the manager.

        Args:
            max_workers: Concurrent streams
            ttl: Seconds a stream is kept after it was started
            clock: Time source
        """
        self.ttl = ttl
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="botkit-stream")
        self._streams: Dict[str, StreamState] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def start(
        self,
        producer: Callable[[], Iterator[str]],
        on_complete: Optional[Callable[[str], Optional[Dict[str, Any]]]] = None,
    ) -> str:
        """
        Launch a stream.

        Args:
            producer: Returns an iterator of text deltas
            on_complete: Called with the full text once the producer is
                exhausted; its return value becomes the stream metadata

        Returns:
            Stream handle
        """
        self.purge_expired()
        handle = uuid.uuid4().hex
        state = StreamState(handle=handle, created_at=self._clock())
        with self._lock:
            self._streams[handle] = state
            self._futures[handle] = self._executor.submit(self._run, state, producer, on_complete)
        logger.debug(f"Started stream {handle}")
        return handle

    def _run(self, state: StreamState, producer, on_complete) -> None:
        try:
            for delta in producer():
                with self._lock:
                    if state.cancelled:
                        break
                    state.deltas.append(delta)
            if on_complete is not None and not state.cancelled:
                metadata = on_complete(state.text)
                with self._lock:
                    state.metadata = metadata or {}
        except Exception as e:
            logger.error(f"Stream {state.handle} failed: {e}")
            with self._lock:
                state.error = str(e)
        finally:
            with self._lock:
                state.done = True
                state.finished_at = self._clock()

    def poll(self, handle: str, offset: int = 0) -> Dict[str, Any]:
        """
        Deltas produced since offset.

        Raises:
            KeyError: Unknown or expired handle
        """
        with self._lock:
            state = self._streams.get(handle)
            if state is None:
                raise KeyError(f"Unknown or expired stream: {handle}")
            deltas = state.deltas[offset:]
            return {
                "handle": handle,
                "deltas": deltas,
                "offset": offset + len(deltas),
                "done": state.done,
                "error": state.error,
                "metadata": dict(state.metadata) if state.done else {},
            }

    def wait(self, handle: str, timeout: Optional[float] = None) -> bool:
        """Block until the stream finishes. Returns False on timeout."""
        with self._lock:
            future = self._futures.get(handle)
        if future is None:
            raise KeyError(f"Unknown or expired stream: {handle}")
        try:
            future.result(timeout=timeout)
        except FutureTimeout:
            return False
        return True

    def cancel(self, handle: str) -> bool:
        with self._lock:
            state = self._streams.get(handle)
            if state is None:
                return False
            state.cancelled = True
            return True

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [h for h, s in self._streams.items() if s.done and now - s.created_at > self.ttl]
            for handle in expired:
                del self._streams[handle]
                self._futures.pop(handle, None)
        return len(expired)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
