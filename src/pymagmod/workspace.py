"""Workspace: the interactive side. Owns the register store and queue, talks to one session."""

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path

from .errors import InvalidOperation, TransportError
from .macro import save
from .messages import (
    Connect,
    ConnectionStateChanged,
    Disconnect,
    Event,
    OperationFailed,
    ReadPage,
    ReadResult,
    WriteAck,
    WriteRequest,
)
from .queue_manager import QueueManager
from .session import DEFAULT_MAX_PENDING, ClientFactory, SessionHandle
from .store import RegisterStore
from .types import MAX_ADDRESS, Cell, CellStatus, ConnectionState, Endpoint, RegisterBank

logger = logging.getLogger(__name__)


def page_bounds(address: int, page_size: int) -> tuple[int, int]:
    """(start, count) of the page that contains ``address``, clipped to the bank."""
    start = address // page_size * page_size
    return start, min(page_size, MAX_ADDRESS + 1 - start)


class Workspace:
    """
    Single-writer owner of the RegisterStore and QueueManager. Requests go out through
    the SessionHandle; events come back through ``handle_event``, matched by correlation id.

    While a session is live a background pump feeds its events into ``handle_event``;
    every operation that submits starts the pump if it is not already running, so the
    bounded event queue is drained while requests go out. ``start_refresh`` re-reads a
    page on an interval.
    """

    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        *,
        max_span: int | None = None,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self.store = RegisterStore()
        self.queue = QueueManager(self.store, max_span=max_span)
        self._client_factory = client_factory
        self._max_pending = max_pending
        self._handle: SessionHandle | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self.refresh_page: tuple[RegisterBank, int, int] | None = None
        self.state = ConnectionState.DISCONNECTED
        self.endpoint: Endpoint | None = None
        self.last_error: str | None = None
        self._pending_reads: dict[int, ReadPage] = {}
        self._pending_writes: dict[int, WriteRequest] = {}
        self._waiters: dict[int, asyncio.Future[Event]] = {}
        self._state_waiters: list[tuple[tuple[ConnectionState, ...], asyncio.Future[ConnectionStateChanged]]] = []

    # -- session lifecycle ---------------------------------------------------

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def outstanding(self) -> int:
        return len(self._pending_reads) + len(self._pending_writes)

    async def connect(self, endpoint: Endpoint) -> bool:
        """
        Tear down any previous session, start a new one and wait for the connect outcome.
        A running refresh keeps going against the new session.
        """
        await self._end_session()
        self.endpoint = endpoint
        self._handle = SessionHandle.start(self._client_factory, max_pending=self._max_pending)
        self.start_pump()
        await self._handle.submit(Connect(endpoint))
        event = await self._wait_state(ConnectionState.CONNECTED, ConnectionState.DISCONNECTED)
        return event.new_state == ConnectionState.CONNECTED

    async def disconnect(self) -> None:
        """Graceful disconnect: requests already submitted finish with their real results."""
        if self._handle is None or not self._handle.running:
            return
        await self._session().submit(Disconnect())
        await self._wait_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        """Stop refreshing, the pump and the session task; every outstanding request gets resolved."""
        await self.stop_refresh()
        await self._end_session()

    async def _end_session(self) -> None:
        await self.stop_pump()
        if self._handle is not None:
            handle, self._handle = self._handle, None
            for event in await handle.close():
                self.handle_event(event)
        self.state = ConnectionState.DISCONNECTED

    def _require_handle(self) -> SessionHandle:
        if self._handle is None or not self._handle.running:
            raise TransportError("No active session")
        return self._handle

    def _session(self) -> SessionHandle:
        handle = self._require_handle()
        self.start_pump()
        return handle

    # -- event handling ------------------------------------------------------

    def handle_event(self, event: Event) -> None:
        """Apply one event to the store. Never blocks."""
        if isinstance(event, ConnectionStateChanged):
            self.state = event.new_state
            if event.reason:
                self.last_error = event.reason
            for states, fut in list(self._state_waiters):
                if event.new_state in states and not fut.done():
                    fut.set_result(event)
            return

        cid = event.correlation_id
        if isinstance(event, ReadResult):
            self._pending_reads.pop(cid, None)
            self.store.apply_read(event.bank, event.start_address, event.values)
        elif isinstance(event, WriteAck):
            op = self._pending_writes.pop(cid, None)
            if op is not None:
                self.queue.clear_applied([op])
        elif isinstance(event, OperationFailed):
            self._pending_reads.pop(cid, None)
            op = self._pending_writes.pop(cid, None)
            self.last_error = event.reason
            if op is not None:
                for address in op.addresses:
                    self.store.mark_failed(op.bank, address, f"{event.kind.value}: {event.reason}")
        waiter = self._waiters.pop(cid, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(event)

    def _pumping(self) -> bool:
        return self._pump_task is not None and not self._pump_task.done()

    async def pump(self) -> None:
        """Feed events into ``handle_event`` until the session stops."""
        handle = self._require_handle()
        while True:
            try:
                event = await handle.next_event()
            except TransportError as e:
                self._fail_waiters(e)
                return
            self.handle_event(event)

    def _fail_waiters(self, error: Exception) -> None:
        waiters, self._waiters = self._waiters, {}
        for fut in waiters.values():
            if not fut.done():
                fut.set_exception(error)
        for _, fut in self._state_waiters:
            if not fut.done():
                fut.set_exception(error)

    def start_pump(self) -> None:
        if self._handle is None or not self._handle.running:
            return
        if not self._pumping():
            self._pump_task = asyncio.create_task(self.pump(), name="workspace-pump")

    async def stop_pump(self) -> None:
        task, self._pump_task = self._pump_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _drive(self, futures: Iterable["asyncio.Future[object]"]) -> None:
        futures = list(futures)
        if not all(f.done() for f in futures):
            self._session()
        await asyncio.gather(*futures)

    async def _wait_state(self, *states: ConnectionState) -> ConnectionStateChanged:
        fut: asyncio.Future[ConnectionStateChanged] = asyncio.get_running_loop().create_future()
        entry = (states, fut)
        self._state_waiters.append(entry)
        try:
            await self._drive([fut])
        finally:
            self._state_waiters.remove(entry)
        return fut.result()

    def _track(self, correlation_id: int) -> "asyncio.Future[Event]":
        fut: asyncio.Future[Event] = asyncio.get_running_loop().create_future()
        self._waiters[correlation_id] = fut
        return fut

    # -- operations ----------------------------------------------------------

    async def read_page(self, bank: RegisterBank, start_address: int, count: int) -> int:
        """Fire-and-forget read; the values land in the store when the result arrives."""
        handle = self._session()
        request = await handle.submit(ReadPage(bank, start_address, count))
        self._pending_reads[request.correlation_id] = request
        return request.correlation_id

    async def read_page_and_wait(self, bank: RegisterBank, start_address: int, count: int) -> Event:
        handle = self._session()
        request = await handle.submit(ReadPage(bank, start_address, count))
        self._pending_reads[request.correlation_id] = request
        fut = self._track(request.correlation_id)
        await self._drive([fut])
        return fut.result()

    async def read_page_at(self, bank: RegisterBank, address: int, page_size: int) -> int:
        start, count = page_bounds(address, page_size)
        return await self.read_page(bank, start, min(count, bank.max_read))

    # -- periodic refresh ----------------------------------------------------

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def start_refresh(self, bank: RegisterBank, start_address: int, count: int, interval: float = 1.0) -> None:
        """
        Re-read one page every ``interval`` seconds while connected. Reads are
        fire-and-forget, so queued and in-flight cells keep their pending values.
        Replaces any refresh already running.
        """
        if interval <= 0:
            raise InvalidOperation("Refresh interval must be positive")
        if self._refresh_task is not None:
            self._refresh_task.cancel()
        self.refresh_page = (bank, start_address, count)
        self._refresh_task = asyncio.create_task(
            self._refresh_loop(bank, start_address, count, interval), name="workspace-refresh"
        )
        logger.info("Refreshing %s %d..%d every %gs", bank.value, start_address, start_address + count - 1, interval)

    async def stop_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        self.refresh_page = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _refresh_loop(self, bank: RegisterBank, start_address: int, count: int, interval: float) -> None:
        last: int | None = None
        while True:
            # Skip the tick while the previous read is still outstanding
            if self.connected and last not in self._pending_reads:
                try:
                    last = await self.read_page(bank, start_address, count)
                except TransportError as e:
                    logger.debug("Refresh skipped: %s", e)
                    last = None
            await asyncio.sleep(interval)

    def toggle(self, bank: RegisterBank, address: int, value: bool | int) -> Cell:
        return self.queue.toggle(bank, address, value)

    def toggle_coil(self, address: int) -> Cell:
        """Flip the coil: un-queue a pending edit, otherwise queue the opposite of the last read."""
        cell = self.store.get(RegisterBank.COIL, address)
        if cell.status == CellStatus.QUEUED:
            return self.queue.revert(RegisterBank.COIL, address)
        return self.queue.toggle(RegisterBank.COIL, address, not bool(cell.last_known_value))

    def revert(self, bank: RegisterBank, address: int) -> Cell:
        return self.queue.revert(bank, address)

    def queue_items(self) -> list[Cell]:
        return self.queue.queued()

    async def apply(self) -> list["asyncio.Future[Event]"]:
        """
        Send every queued write. Covered cells go IN_FLIGHT until their result arrives.
        Returns one future per request, resolved with its terminal event.
        """
        handle = self._session()
        batch = self.queue.build_batch()
        if not batch:
            return []
        if not self.connected:
            raise InvalidOperation("Cannot apply queued writes while disconnected")
        self.queue.mark_in_flight(batch)
        futures: list[asyncio.Future[Event]] = []
        for i, op in enumerate(batch):
            try:
                request = await handle.submit(op)
            except TransportError as e:
                for unsent in batch[i:]:
                    for address in unsent.addresses:
                        self.store.mark_failed(unsent.bank, address, f"not sent: {e}")
                raise
            self._pending_writes[request.correlation_id] = request
            futures.append(self._track(request.correlation_id))
        logger.info(
            "Applying %d queued writes in %d requests",
            sum(len(op.addresses) for op in batch),
            len(batch),
        )
        return futures

    async def wait(self, futures: Iterable["asyncio.Future[Event]"]) -> list[Event]:
        futures = list(futures)
        await self._drive(futures)
        return [f.result() for f in futures]

    async def apply_and_wait(self) -> list[Event]:
        return await self.wait(await self.apply())

    def save_macro(self, path: str | Path, *, overwrite: bool = False) -> Path:
        """Record the current queue (left queued) as a macro file."""
        return save(self.queue.build_batch(), path, endpoint=self.endpoint, overwrite=overwrite)
