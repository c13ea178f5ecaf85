"""
Bridge from the blocking generation driver to an asyncio host.

Forward passes are CPU-bound and must never run on the event loop thread.
generate_stream() runs the driver in the loop's default executor and hands
tokens over through a bounded asyncio.Queue:

    worker thread                              event loop
    ─────────────                              ──────────
    for g in driver:                           async for g in stream:
        run_coroutine_threadsafe(                  ...
            queue.put(("token", g)))  ───────►  queue.get()
        (blocks while the queue is full)

  Backpressure: the worker waits on queue.put, so it can be at most
  channel_size tokens ahead of the consumer. Order is generation order.

  Cancellation is cooperative. A CancellationToken is checked once per
  generated token (never inside a forward pass) and while the worker waits
  for queue space. After cancel() the consumer sees no further tokens and
  the stream closes with end_reason CANCELLED, not with an exception.
  A stream the consumer simply drops is cancelled when it is collected, and
  the worker also gives up once the event loop stops or closes.

  Errors raised by the driver are delivered after the tokens already
  produced, and re-raised from the consumer's `async for`.

StreamSession keeps at most one live run per conversation: start() cancels
the previous token before installing a new one.
"""

import asyncio
import concurrent.futures
import enum
import logging
import threading
import weakref
from typing import Optional

from chat_engine.config import EngineConfig

logger = logging.getLogger(__name__)

# Worker and consumer wake up this often to look at the cancellation token.
POLL_INTERVAL = 0.05


class CancellationToken:
    """One-shot, thread-safe stop signal."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()

    def cancel(self) -> bool:
        """Signal cancellation. Returns True only for the call that fired it."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class StreamEnd(enum.Enum):
    FINISHED = "finished"
    CANCELLED = "cancelled"
    ERROR = "error"


class _Worker:
    """
    Worker-thread half of a TokenStream.

    Holds no reference to the TokenStream itself, so a stream the consumer
    drops can be collected, and its finalizer cancels the token this worker
    polls.
    """

    def __init__(self, pipeline, token, queue, loop, poll_interval):
        self.pipeline = pipeline
        self.token = token
        self.queue = queue
        self.loop = loop
        self.poll_interval = poll_interval

    def _abandoned(self) -> bool:
        return self.token.cancelled or self.loop.is_closed() or not self.loop.is_running()

    def put(self, message: tuple) -> bool:
        """Block until the message is queued. False if the consumer is gone first."""
        if self.loop.is_closed():
            return False
        future = asyncio.run_coroutine_threadsafe(self.queue.put(message), self.loop)
        while True:
            try:
                future.result(timeout=self.poll_interval)
                return True
            except concurrent.futures.TimeoutError:
                if self._abandoned():
                    if not self.loop.is_closed():
                        future.cancel()
                    return False

    def run(self) -> None:
        produced = 0
        try:
            driver = self.pipeline.iter()
        except Exception as e:
            logger.error("generation worker failed to start: %s", e)
            self.put(("error", e))
            return
        while not self.token.cancelled:
            try:
                generation = next(driver)
            except StopIteration:
                self.put(("end", None))
                return
            except Exception as e:
                logger.error("generation worker failed after %d tokens: %s", produced, e)
                self.put(("error", e))
                return
            if not self.put(("token", generation)):
                break
            produced += 1
        logger.info("generation cancelled after %d tokens", produced)


class TokenStream:
    """
    Async iterator of Generation items produced on a worker thread.

    Usage:
        async with generate_stream(pipeline) as stream:
            async for generation in stream:
                print(generation.text, end="")
        stream.end_reason   # StreamEnd.FINISHED

    Leaving the `async with` block early cancels the worker, and so does
    dropping the last reference to the stream.
    """

    def __init__(
        self,
        pipeline,
        token: Optional[CancellationToken] = None,
        channel_size: int = 20,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.pipeline = pipeline
        self.token = token or CancellationToken()
        self.poll_interval = poll_interval
        self.end_reason: Optional[StreamEnd] = None
        self.emitted = 0

        loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=channel_size)
        worker = _Worker(pipeline, self.token, self._queue, loop, poll_interval)
        logger.info("generation started (channel size %d)", channel_size)
        self._worker = loop.run_in_executor(None, worker.run)
        # A stream dropped without cancel() still stops its worker
        weakref.finalize(self, self.token.cancel)

    # ── Consumer side ──────────────────────────────────────────────────────

    def __aiter__(self):
        return self

    async def __anext__(self):
        while self.end_reason is None:
            if self.token.cancelled:
                self.end_reason = StreamEnd.CANCELLED
                break
            try:
                kind, payload = await asyncio.wait_for(
                    self._queue.get(), timeout=self.poll_interval
                )
            except asyncio.TimeoutError:
                continue
            if kind == "token":
                if self.token.cancelled:
                    continue
                self.emitted += 1
                return payload
            if kind == "error":
                self.end_reason = StreamEnd.ERROR
                raise payload
            self.end_reason = StreamEnd.FINISHED
        raise StopAsyncIteration

    def cancel(self) -> bool:
        return self.token.cancel()

    async def wait_closed(self) -> None:
        """Wait for the worker thread to return."""
        await self._worker

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        if self.end_reason is None:
            self.cancel()
        await self.wait_closed()


def generate_stream(
    pipeline,
    token: Optional[CancellationToken] = None,
    channel_size: int = 20,
) -> TokenStream:
    """Start generating on a worker thread. Must be called inside a running loop."""
    return TokenStream(pipeline, token=token, channel_size=channel_size)


class StreamSession:
    """
    One conversation's generation slot.

    start() first cancels whatever run is still in flight, so two workers
    never feed the same conversation.
    """

    def __init__(self, engine_config: Optional[EngineConfig] = None):
        self.engine_config = engine_config or EngineConfig()
        self._token: Optional[CancellationToken] = None
        self.stream: Optional[TokenStream] = None

    def start(self, pipeline) -> TokenStream:
        self.cancel()
        self._token = CancellationToken()
        self.stream = generate_stream(
            pipeline, token=self._token, channel_size=self.engine_config.channel_size
        )
        return self.stream

    def cancel(self) -> bool:
        """Cancel the live run, if any. True if a run was actually signalled."""
        token, self._token = self._token, None
        if token is None:
            return False
        return token.cancel()
