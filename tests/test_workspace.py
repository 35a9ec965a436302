"""Tests for the Workspace: reads, queued writes, apply and session replacement."""

import asyncio
from pathlib import Path

import pytest

from pymagmod.errors import InvalidOperation, TransportError
from pymagmod.macro import load
from pymagmod.messages import FailureKind, OperationFailed, ReadResult, WriteAck
from pymagmod.types import CellStatus, ConnectionState, Endpoint, RegisterBank
from pymagmod.workspace import Workspace, page_bounds

HR = RegisterBank.HOLDING_REGISTER
COIL = RegisterBank.COIL


def test_page_bounds() -> None:
    assert page_bounds(70, 64) == (64, 64)
    assert page_bounds(65535, 128) == (65408, 128)
    assert page_bounds(65535, 100) == (65500, 36)


def test_apply_writes_and_syncs(factory, device, endpoint: Endpoint) -> None:
    async def scenario(ws: Workspace) -> list:
        assert await ws.connect(endpoint)
        ws.toggle(HR, 10, 100)
        ws.toggle(HR, 11, 200)
        ws.toggle_coil(3)
        events = await ws.apply_and_wait()
        await ws.close()
        return events

    ws = Workspace(factory)
    events = asyncio.run(scenario(ws))
    assert all(isinstance(e, WriteAck) for e in events)
    assert len(events) == 2
    assert ws.store.get(HR, 10).last_known_value == 100
    assert ws.store.get(HR, 11).status == CellStatus.SYNCED
    assert ws.store.get(COIL, 3).last_known_value is True
    assert ws.queue_items() == []
    assert device.calls == [("write_single", COIL, 3, True), ("write_multiple", HR, 10, (100, 200))]


def test_partial_failure_marks_only_failed_request(factory, device, endpoint: Endpoint) -> None:
    device.illegal_addresses.add((HR, 50))

    async def scenario(ws: Workspace) -> list:
        await ws.connect(endpoint)
        ws.toggle(HR, 10, 1)
        ws.toggle(HR, 50, 2)
        events = await ws.apply_and_wait()
        await ws.close()
        return events

    ws = Workspace(factory)
    events = asyncio.run(scenario(ws))
    assert isinstance(events[0], WriteAck)
    assert isinstance(events[1], OperationFailed)
    assert ws.store.get(HR, 10).status == CellStatus.SYNCED
    failed = ws.store.get(HR, 50)
    assert failed.status == CellStatus.FAILED
    assert failed.error.startswith("device:")
    assert ws.outstanding == 0


def test_read_page_fills_store(factory, device, endpoint: Endpoint) -> None:
    device.banks[HR].update({0: 5, 1: 6})

    async def scenario(ws: Workspace):
        await ws.connect(endpoint)
        event = await ws.read_page_and_wait(HR, 0, 4)
        await ws.close()
        return event

    ws = Workspace(factory)
    event = asyncio.run(scenario(ws))
    assert isinstance(event, ReadResult)
    assert [ws.store.get(HR, a).last_known_value for a in range(4)] == [5, 6, 0, 0]


def test_read_does_not_overwrite_queued_edit(factory, device, endpoint: Endpoint) -> None:
    device.banks[HR][0] = 5

    async def scenario(ws: Workspace) -> None:
        await ws.connect(endpoint)
        ws.toggle(HR, 0, 99)
        await ws.read_page_and_wait(HR, 0, 2)
        await ws.close()

    ws = Workspace(factory)
    asyncio.run(scenario(ws))
    cell = ws.store.get(HR, 0)
    assert cell.status == CellStatus.QUEUED
    assert cell.queued_value == 99
    assert ws.store.get(HR, 1).status == CellStatus.SYNCED


def test_pumped_read(factory, device, endpoint: Endpoint) -> None:
    device.banks[COIL][130] = True

    async def scenario(ws: Workspace) -> None:
        await ws.connect(endpoint)
        ws.start_pump()
        await ws.read_page_at(COIL, 130, 128)
        while ws.outstanding:
            await asyncio.sleep(0)
        await ws.close()

    ws = Workspace(factory)
    asyncio.run(scenario(ws))
    assert device.calls == [("read", COIL, 128, 128)]
    assert ws.store.get(COIL, 130).last_known_value is True


def test_apply_while_disconnected(factory) -> None:
    async def scenario(ws: Workspace) -> None:
        ws.toggle(HR, 0, 1)
        await ws.apply()

    with pytest.raises(TransportError, match="No active session"):
        asyncio.run(scenario(Workspace(factory)))


def test_apply_after_failed_connect(factory, device, endpoint: Endpoint) -> None:
    device.refuse_connect = True

    async def scenario(ws: Workspace) -> bool:
        ok = await ws.connect(endpoint)
        ws.toggle(HR, 0, 1)
        try:
            with pytest.raises(InvalidOperation, match="disconnected"):
                await ws.apply()
        finally:
            await ws.close()
        return ok

    ws = Workspace(factory)
    assert asyncio.run(scenario(ws)) is False
    assert ws.last_error.startswith("Failed to connect")
    assert ws.store.get(HR, 0).status == CellStatus.QUEUED


def test_reconnect_tears_down_previous_session(factory, device, endpoint: Endpoint) -> None:
    """In-flight writes of the replaced session resolve as CANCELLED instead of staying in flight."""

    async def scenario(ws: Workspace) -> list:
        await ws.connect(endpoint)
        ws.toggle(HR, 0, 1)
        device.hold()
        futures = await ws.apply()
        await device.until_stalled()
        assert await ws.connect(Endpoint("192.0.2.20")) is True
        results = [f.result() for f in futures]
        await ws.close()
        return results

    ws = Workspace(factory)
    results = asyncio.run(scenario(ws))
    assert results[0].kind == FailureKind.CANCELLED
    cell = ws.store.get(HR, 0)
    assert cell.status == CellStatus.FAILED
    assert "cancelled" in cell.error
    assert device.connects[-1] == Endpoint("192.0.2.20")


def test_disconnect(factory, endpoint: Endpoint) -> None:
    async def scenario(ws: Workspace) -> None:
        await ws.connect(endpoint)
        assert ws.connected
        await ws.disconnect()
        await ws.close()

    ws = Workspace(factory)
    asyncio.run(scenario(ws))
    assert ws.state == ConnectionState.DISCONNECTED


def test_toggle_coil_flips_last_read() -> None:
    ws = Workspace()
    ws.store.apply_read(COIL, 0, [True])
    assert ws.toggle_coil(0).queued_value is False
    assert ws.toggle_coil(0).status == CellStatus.SYNCED


def test_save_macro_keeps_queue(tmp_path: Path, endpoint: Endpoint) -> None:
    ws = Workspace()
    ws.endpoint = endpoint
    ws.toggle(HR, 10, 100)
    ws.toggle(HR, 11, 200)
    path = ws.save_macro(tmp_path / "flow")
    macro = load(path)
    assert [(d.address, d.value) for d in macro.directives] == [(10, 100), (11, 200)]
    assert macro.endpoint == endpoint
    assert len(ws.queue) == 2


def test_apply_more_writes_than_queue_capacity(factory, device, endpoint: Endpoint) -> None:
    """Twenty separate write requests through queues that hold four."""
    addresses = list(range(0, 40, 2))

    async def scenario(ws: Workspace) -> list:
        await ws.connect(endpoint)
        for address in addresses:
            ws.toggle(HR, address, address + 1)
        events = await asyncio.wait_for(ws.apply_and_wait(), 2)
        await ws.close()
        return events

    ws = Workspace(factory, max_pending=4)
    events = asyncio.run(scenario(ws))
    assert len(events) == 20
    assert all(isinstance(e, WriteAck) for e in events)
    assert all(ws.store.get(HR, a).status == CellStatus.SYNCED for a in addresses)
    assert ws.outstanding == 0
    assert device.banks[HR] == {a: a + 1 for a in addresses}


def test_reads_after_failed_connect_do_not_block(factory, device, endpoint: Endpoint) -> None:
    device.refuse_connect = True

    async def scenario(ws: Workspace) -> None:
        assert await ws.connect(endpoint) is False
        for address in range(0, 200, 2):
            await asyncio.wait_for(ws.read_page(HR, address, 1), 1)
        while ws.outstanding:
            await asyncio.sleep(0)
        await ws.close()

    ws = Workspace(factory, max_pending=4)
    asyncio.run(scenario(ws))
    assert ws.last_error == "Not connected"
    assert device.calls == []


def test_unexpected_client_error_marks_cell_failed(factory, device, endpoint: Endpoint) -> None:
    device.crash_next = True

    async def scenario(ws: Workspace) -> tuple[list, ConnectionState]:
        await ws.connect(endpoint)
        ws.toggle(HR, 0, 1)
        events = await asyncio.wait_for(ws.apply_and_wait(), 2)
        state = ws.state
        await ws.close()
        return events, state

    ws = Workspace(factory)
    events, state = asyncio.run(scenario(ws))
    assert events[0].kind == FailureKind.TRANSPORT
    assert state == ConnectionState.DISCONNECTED
    cell = ws.store.get(HR, 0)
    assert cell.status == CellStatus.FAILED
    assert cell.error.startswith("transport: Unexpected client error")


def test_close_fails_in_flight_writes(factory, device, endpoint: Endpoint) -> None:
    """One write stalled on the wire and one still queued both end FAILED."""

    async def scenario(ws: Workspace) -> list:
        await ws.connect(endpoint)
        ws.toggle(HR, 0, 1)
        ws.toggle(HR, 5, 2)
        device.hold()
        futures = await ws.apply()
        await device.until_stalled()
        assert ws.store.get(HR, 0).status == CellStatus.IN_FLIGHT
        await ws.close()
        return [f.result() for f in futures]

    ws = Workspace(factory)
    results = asyncio.run(scenario(ws))
    assert [e.kind for e in results] == [FailureKind.CANCELLED, FailureKind.CANCELLED]
    for address in (0, 5):
        cell = ws.store.get(HR, address)
        assert cell.status == CellStatus.FAILED
        assert cell.error.startswith("cancelled:")
    assert ws.outstanding == 0
    assert device.closes == 1


def test_refresh_keeps_queued_edit(factory, device, endpoint: Endpoint) -> None:
    device.banks[HR].update({0: 5, 1: 6})

    async def scenario(ws: Workspace) -> tuple[bool, int]:
        await ws.connect(endpoint)
        ws.toggle(HR, 0, 99)
        ws.start_refresh(HR, 0, 2, interval=0.01)
        while len(device.calls) < 3:
            await asyncio.sleep(0.01)
        refreshing = ws.refreshing
        await ws.stop_refresh()
        while ws.outstanding:
            await asyncio.sleep(0)
        calls = len(device.calls)
        await asyncio.sleep(0.05)
        assert len(device.calls) == calls
        await ws.close()
        return refreshing, calls

    ws = Workspace(factory)
    refreshing, calls = asyncio.run(scenario(ws))
    assert refreshing
    assert set(device.calls) == {("read", HR, 0, 2)}
    cell = ws.store.get(HR, 0)
    assert cell.status == CellStatus.QUEUED
    assert cell.queued_value == 99
    assert ws.store.get(HR, 1).last_known_value == 6
    assert ws.refresh_page is None


def test_refresh_waits_for_connection(factory, device) -> None:
    async def scenario(ws: Workspace) -> None:
        with pytest.raises(InvalidOperation):
            ws.start_refresh(HR, 0, 2, interval=0)
        ws.start_refresh(HR, 0, 2, interval=0.01)
        await asyncio.sleep(0.05)
        assert ws.refreshing
        await ws.close()

    ws = Workspace(factory)
    asyncio.run(scenario(ws))
    assert device.calls == []
    assert not ws.refreshing
