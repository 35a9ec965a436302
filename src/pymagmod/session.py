"""
Session task and handle.

The SessionTask owns the single live connection and executes requests strictly in
arrival order, one at a time. The interactive side talks to it only through a
SessionHandle: a bounded request queue in, a bounded event queue out.
"""

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import replace

from .errors import DeviceException, TransportError
from .messages import (
    Connect,
    ConnectionStateChanged,
    DataRequest,
    Disconnect,
    Event,
    FailureKind,
    OperationFailed,
    ReadPage,
    ReadResult,
    Request,
    TerminalEvent,
    WriteAck,
    WriteSingle,
    is_data_request,
)
from .protocol import ModbusProtocolClient, ProtocolClient
from .types import ConnectionState, Endpoint

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Endpoint], ProtocolClient]

DEFAULT_MAX_PENDING = 64


def default_client_factory(unit_id: int = 1, timeout: float = 3.0, retries: int = 1) -> ClientFactory:
    """Factory producing pymodbus-backed clients with the given transport settings."""

    def factory(endpoint: Endpoint) -> ProtocolClient:
        return ModbusProtocolClient(endpoint, unit_id=unit_id, timeout=timeout, retries=retries)

    return factory


class SessionTask:
    """
    State machine DISCONNECTED -> CONNECTING -> CONNECTED -> (CLOSING) -> DISCONNECTED.

    Every data request taken from the queue resolves with exactly one terminal event:
    its real result, OperationFailed on device/transport errors, or CANCELLED when
    the task is torn down first.

    Failure paths never block on a full event queue: events that do not fit go to
    ``overflow`` and are delivered after everything already queued.
    """

    def __init__(
        self,
        requests: "asyncio.Queue[Request]",
        events: "asyncio.Queue[Event]",
        client_factory: ClientFactory,
    ) -> None:
        self._requests = requests
        self._events = events
        self._client_factory = client_factory
        self._client: ProtocolClient | None = None
        self._endpoint: Endpoint | None = None
        self._state = ConnectionState.DISCONNECTED
        self._unresolved: dict[int, DataRequest] = {}
        self.overflow: deque[Event] = deque()
        self.request_sequence = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def run(self) -> None:
        try:
            while True:
                request = await self._requests.get()
                if request.correlation_id <= self.request_sequence and is_data_request(request):
                    logger.warning("Correlation id %d is not increasing", request.correlation_id)
                self.request_sequence = max(self.request_sequence, request.correlation_id)
                if is_data_request(request):
                    self._unresolved[request.correlation_id] = request
                await self._handle(request)
        except asyncio.CancelledError:
            await self._teardown()
            raise
        except Exception:
            logger.exception("Session task failed")
            await self._teardown("Session task failed")

    # -- emission ------------------------------------------------------------

    async def _emit(self, event: Event, *, wait: bool = True) -> None:
        if not wait:
            self._emit_nowait(event)
            return
        while self.overflow:
            await self._events.put(self.overflow[0])
            self.overflow.popleft()
        await self._events.put(event)

    def _emit_nowait(self, event: Event) -> None:
        if not self.overflow:
            try:
                self._events.put_nowait(event)
                return
            except asyncio.QueueFull:
                pass
        self.overflow.append(event)

    async def _resolve(self, event: TerminalEvent, *, wait: bool = True) -> None:
        await self._emit(event, wait=wait)
        self._unresolved.pop(event.correlation_id, None)

    async def _set_state(self, state: ConnectionState, reason: str | None = None, *, wait: bool = True) -> None:
        self._state = state
        logger.info("Session %s%s", state.value, f" ({reason})" if reason else "")
        await self._emit(ConnectionStateChanged(state, reason=reason, endpoint=self._endpoint), wait=wait)

    # -- request handling ----------------------------------------------------

    async def _handle(self, request: Request) -> None:
        if isinstance(request, Connect):
            await self._connect(request.endpoint)
        elif isinstance(request, Disconnect):
            await self._disconnect()
        elif self._state != ConnectionState.CONNECTED or self._client is None:
            await self._resolve(
                OperationFailed(request.correlation_id, FailureKind.NOT_CONNECTED, "Not connected")
            )
        else:
            await self._execute(self._client, request)

    async def _connect(self, endpoint: Endpoint) -> None:
        if self._state == ConnectionState.CONNECTED:
            logger.debug("Already connected to %s; ignoring connect to %s", self._endpoint, endpoint)
            await self._emit(ConnectionStateChanged(self._state, endpoint=self._endpoint))
            return
        self._endpoint = endpoint
        await self._set_state(ConnectionState.CONNECTING)
        client = self._client_factory(endpoint)
        try:
            await client.connect()
        except TransportError as e:
            await self._drop_connection(str(e))
            return
        except Exception as e:
            logger.exception("Client failed while connecting to %s", endpoint)
            await self._drop_connection(f"Unexpected client error: {e}")
            return
        self._client = client
        await self._set_state(ConnectionState.CONNECTED)

    async def _disconnect(self) -> None:
        if self._state != ConnectionState.CONNECTED:
            await self._emit(ConnectionStateChanged(self._state, endpoint=self._endpoint))
            return
        # FIFO order: everything submitted before this request has already resolved
        await self._set_state(ConnectionState.CLOSING)
        await self._close_client()
        await self._set_state(ConnectionState.DISCONNECTED)

    async def _execute(self, client: ProtocolClient, request: DataRequest) -> None:
        cid = request.correlation_id
        logger.debug("-> #%d %r", cid, request)
        try:
            if isinstance(request, ReadPage):
                values = await client.read(request.bank, request.start_address, request.count)
                event: TerminalEvent = ReadResult(cid, request.bank, request.start_address, tuple(values))
            elif isinstance(request, WriteSingle):
                await client.write_single(request.bank, request.address, request.value)
                event = WriteAck(cid, request.bank, (request.address,))
            else:
                await client.write_multiple(request.bank, request.start_address, request.values)
                event = WriteAck(cid, request.bank, tuple(request.addresses))
        except DeviceException as e:
            logger.warning("Device rejected #%d: %s", cid, e)
            await self._resolve(OperationFailed(cid, FailureKind.DEVICE, str(e), e.exception_code))
            return
        except TransportError as e:
            await self._resolve(OperationFailed(cid, FailureKind.TRANSPORT, str(e)))
            await self._drop_connection(str(e))
            return
        except Exception as e:
            logger.exception("Client failed on #%d", cid)
            reason = f"Unexpected client error: {e}"
            await self._resolve(OperationFailed(cid, FailureKind.TRANSPORT, reason))
            await self._drop_connection(reason)
            return
        logger.debug("<- #%d %r", cid, event)
        await self._resolve(event)

    async def _drop_connection(self, reason: str) -> None:
        """Transport failure: go straight to DISCONNECTED and fail every outstanding request."""
        await self._close_client()
        # Requests behind the next Connect belong to the new connection
        waiting = self._take_queued()
        keep_from = next((i for i, r in enumerate(waiting) if isinstance(r, Connect)), len(waiting))
        failed, kept = waiting[:keep_from], waiting[keep_from:]
        for request in kept:
            self._requests.put_nowait(request)
        for request in failed:
            if is_data_request(request):
                self._unresolved[request.correlation_id] = request
        await self._set_state(ConnectionState.DISCONNECTED, reason, wait=False)
        for request in failed:
            if is_data_request(request):
                await self._resolve(
                    OperationFailed(request.correlation_id, FailureKind.TRANSPORT, reason), wait=False
                )

    def _take_queued(self) -> list[Request]:
        out: list[Request] = []
        while True:
            try:
                out.append(self._requests.get_nowait())
            except asyncio.QueueEmpty:
                return out

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()

    async def _teardown(self, reason: str = "Session closed") -> None:
        """Cancelled: resolve everything outstanding, then close the connection."""
        for request in self._take_queued():
            if is_data_request(request):
                self._unresolved[request.correlation_id] = request
        for cid in list(self._unresolved):
            await self._resolve(OperationFailed(cid, FailureKind.CANCELLED, reason), wait=False)
        try:
            await self._close_client()
        finally:
            if self._state != ConnectionState.DISCONNECTED:
                await self._set_state(ConnectionState.DISCONNECTED, reason, wait=False)


class SessionHandle:
    """
    The interactive side's only view of a session: submit requests, receive events.
    Create with ``SessionHandle.start()`` from inside a running event loop.
    """

    def __init__(
        self,
        requests: "asyncio.Queue[Request]",
        events: "asyncio.Queue[Event]",
        task: "asyncio.Task[None]",
        overflow: "deque[Event] | None" = None,
    ) -> None:
        self._requests = requests
        self._events = events
        self._task = task
        self._overflow: deque[Event] = overflow if overflow is not None else deque()
        self._ids = itertools.count(1)
        self._buffer: deque[Event] = deque()

    @classmethod
    def start(
        cls,
        client_factory: ClientFactory | None = None,
        *,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> "SessionHandle":
        requests: asyncio.Queue[Request] = asyncio.Queue(maxsize=max_pending)
        events: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_pending)
        session = SessionTask(requests, events, client_factory or default_client_factory())
        task = asyncio.create_task(session.run(), name="modbus-session")
        return cls(requests, events, task, session.overflow)

    @property
    def running(self) -> bool:
        return not self._task.done()

    async def submit(self, request: Request) -> Request:
        """Stamp the request with a fresh correlation id and queue it. Returns the stamped request."""
        if self._task.done():
            raise TransportError("Session task is not running")
        stamped = replace(request, correlation_id=next(self._ids))
        await self._requests.put(stamped)
        return stamped

    def _take_ready(self) -> Event | None:
        if not self._events.empty():
            return self._events.get_nowait()
        if self._overflow:
            return self._overflow.popleft()
        return None

    async def _receive(self) -> Event:
        event = self._take_ready()
        if event is not None:
            return event
        if self._task.done():
            raise TransportError("Session task has stopped")
        getter = asyncio.ensure_future(self._events.get())
        try:
            await asyncio.wait({getter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            if getter.done() and not getter.cancelled():
                self._buffer.appendleft(getter.result())
            else:
                getter.cancel()
            raise
        if not getter.done():
            getter.cancel()
        elif not getter.cancelled():
            return getter.result()
        event = self._take_ready()
        if event is not None:
            return event
        raise TransportError("Session task has stopped")

    async def next_event(self) -> Event:
        """Next event in emission order."""
        if self._buffer:
            return self._buffer.popleft()
        return await self._receive()

    async def wait_for(self, correlation_id: int) -> TerminalEvent:
        """Wait for the terminal event of one request; other events stay queued for ``next_event``."""
        for event in self._buffer:
            if not isinstance(event, ConnectionStateChanged) and event.correlation_id == correlation_id:
                self._buffer.remove(event)
                return event
        while True:
            event = await self._receive()
            if not isinstance(event, ConnectionStateChanged) and event.correlation_id == correlation_id:
                return event
            self._buffer.append(event)

    async def _wait_state(self, *states: ConnectionState) -> ConnectionStateChanged:
        while True:
            event = await self._receive()
            if isinstance(event, ConnectionStateChanged):
                if event.new_state in states:
                    return event
            else:
                self._buffer.append(event)

    async def connect(self, endpoint: Endpoint) -> None:
        """Connect and wait for the outcome; raises TransportError if the connection fails."""
        await self.submit(Connect(endpoint))
        event = await self._wait_state(ConnectionState.CONNECTED, ConnectionState.DISCONNECTED)
        if event.new_state != ConnectionState.CONNECTED:
            raise TransportError(event.reason or f"Failed to connect to {endpoint}")

    async def disconnect(self) -> None:
        """Close the connection after everything already submitted has resolved."""
        await self.submit(Disconnect())
        await self._wait_state(ConnectionState.DISCONNECTED)

    async def close(self) -> list[Event]:
        """
        Stop the session task. Outstanding requests resolve with CANCELLED; all events
        not yet received are returned in order.
        """
        leftovers = list(self._buffer)
        self._buffer.clear()
        if not self._task.done():
            self._task.cancel()
            while True:
                try:
                    leftovers.append(await self._receive())
                except TransportError:
                    break
        event = self._take_ready()
        while event is not None:
            leftovers.append(event)
            event = self._take_ready()
        # A task cancelled before its first step never saw these
        while not self._requests.empty():
            request = self._requests.get_nowait()
            if is_data_request(request):
                leftovers.append(
                    OperationFailed(request.correlation_id, FailureKind.CANCELLED, "Session closed")
                )
        return leftovers
