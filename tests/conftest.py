"""Shared fixtures: an in-memory Modbus device and a protocol client factory bound to it."""

import asyncio
from collections.abc import Sequence

import pytest

from pymagmod.errors import DeviceException, TransportError
from pymagmod.types import Endpoint, RegisterBank


class FakeDevice:
    """Register banks in a dict, with knobs for failures and stalls."""

    def __init__(self) -> None:
        self.banks: dict[RegisterBank, dict[int, bool | int]] = {bank: {} for bank in RegisterBank}
        self.calls: list[tuple] = []
        self.connects: list[Endpoint] = []
        self.closes = 0
        self.refuse_connect = False
        self.illegal_addresses: set[tuple[RegisterBank, int]] = set()
        self.drop_next = False
        self.drop_on_call: int | None = None
        self.crash_next = False
        self._hold: asyncio.Event | None = None
        self.stalled = 0

    def hold(self) -> None:
        """Stall every operation until ``release``."""
        self._hold = asyncio.Event()

    def release(self, *, drop: bool = False) -> None:
        self.drop_next = drop
        assert self._hold is not None
        self._hold.set()
        self._hold = None

    async def until_stalled(self, n: int = 1) -> None:
        while self.stalled < n:
            await asyncio.sleep(0)

    async def step(self, call: tuple, bank: RegisterBank, addresses: Sequence[int]) -> None:
        self.calls.append(call)
        hold = self._hold
        if hold is not None:
            self.stalled += 1
            await hold.wait()
        else:
            await asyncio.sleep(0)
        if self.drop_next or self.drop_on_call == len(self.calls):
            self.drop_next = False
            self.drop_on_call = None
            raise TransportError("Connection reset by peer")
        if self.crash_next:
            self.crash_next = False
            raise RuntimeError("client bug")
        for address in addresses:
            if (bank, address) in self.illegal_addresses:
                raise DeviceException("Illegal data address", bank=bank.value, address=address, exception_code=2)


class FakeClient:
    def __init__(self, device: FakeDevice, endpoint: Endpoint) -> None:
        self.device = device
        self.endpoint = endpoint

    async def connect(self) -> None:
        await asyncio.sleep(0)
        if self.device.refuse_connect:
            raise TransportError(f"Failed to connect to {self.endpoint}")
        self.device.connects.append(self.endpoint)

    async def close(self) -> None:
        self.device.closes += 1

    async def read(self, bank: RegisterBank, start_address: int, count: int) -> list[bool | int]:
        addresses = range(start_address, start_address + count)
        await self.device.step(("read", bank, start_address, count), bank, addresses)
        default: bool | int = False if bank.is_bit else 0
        return [self.device.banks[bank].get(a, default) for a in addresses]

    async def write_single(self, bank: RegisterBank, address: int, value: bool | int) -> None:
        await self.device.step(("write_single", bank, address, value), bank, [address])
        self.device.banks[bank][address] = value

    async def write_multiple(self, bank: RegisterBank, start_address: int, values: Sequence[bool | int]) -> None:
        addresses = range(start_address, start_address + len(values))
        await self.device.step(("write_multiple", bank, start_address, tuple(values)), bank, addresses)
        for address, value in zip(addresses, values):
            self.device.banks[bank][address] = value


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def factory(device: FakeDevice):
    def make(endpoint: Endpoint) -> FakeClient:
        return FakeClient(device, endpoint)

    return make


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint("192.0.2.10", 502)
