"""ModbusProtocolClient: typed per-bank read/write over pymodbus' asyncio TCP client."""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Protocol

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException as PymodbusException

from .errors import DeviceException, TransportError
from .types import Endpoint, RegisterBank

logger = logging.getLogger(__name__)


class ProtocolClient(Protocol):
    """What the session task needs from a protocol client."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def read(self, bank: RegisterBank, start_address: int, count: int) -> list[bool | int]: ...

    async def write_single(self, bank: RegisterBank, address: int, value: bool | int) -> None: ...

    async def write_multiple(self, bank: RegisterBank, start_address: int, values: Sequence[bool | int]) -> None: ...


class ModbusProtocolClient:
    """
    Async Modbus TCP client for one endpoint. Device exception responses raise
    DeviceException; socket errors, timeouts and lost connections raise TransportError.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        unit_id: int = 1,
        timeout: float = 3.0,
        retries: int = 1,
    ) -> None:
        self._endpoint = endpoint
        self._unit_id = unit_id
        self._timeout = timeout
        self._retries = retries
        self._client: AsyncModbusTcpClient | None = None

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    async def connect(self) -> None:
        """Open the TCP connection."""
        self._client = AsyncModbusTcpClient(
            host=self._endpoint.host,
            port=self._endpoint.port,
            timeout=self._timeout,
            retries=self._retries,
        )
        try:
            ok = await self._client.connect()
        except (PymodbusException, OSError) as e:
            self._client = None
            raise TransportError(f"Failed to connect to {self._endpoint}: {e}", cause=e) from e
        if not ok:
            self._client = None
            raise TransportError(f"Failed to connect to {self._endpoint}")
        logger.info("Connected to %s (unit %d)", self._endpoint, self._unit_id)

    async def close(self) -> None:
        """Close the TCP connection."""
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.warning("Error closing Modbus client: %s", e)
            self._client = None

    def _get_client(self) -> AsyncModbusTcpClient:
        if self._client is None:
            raise TransportError(f"Not connected to {self._endpoint}")
        return self._client

    async def _call(self, bank: RegisterBank, address: int, coro: Any) -> Any:
        try:
            rr = await coro
        except (PymodbusException, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"{bank.value}@{address}: {e}", cause=e) from e
        if rr.isError():
            raise DeviceException(
                str(rr),
                bank=bank.value,
                address=address,
                exception_code=getattr(rr, "exception_code", None),
            )
        return rr

    # -- typed reads ---------------------------------------------------------

    async def read_coils(self, start_address: int, count: int) -> list[bool]:
        client = self._get_client()
        rr = await self._call(
            RegisterBank.COIL,
            start_address,
            client.read_coils(start_address, count=count, device_id=self._unit_id),
        )
        return self._bits(rr, RegisterBank.COIL, start_address, count)

    async def read_discrete_inputs(self, start_address: int, count: int) -> list[bool]:
        client = self._get_client()
        rr = await self._call(
            RegisterBank.DISCRETE_INPUT,
            start_address,
            client.read_discrete_inputs(start_address, count=count, device_id=self._unit_id),
        )
        return self._bits(rr, RegisterBank.DISCRETE_INPUT, start_address, count)

    async def read_input_registers(self, start_address: int, count: int) -> list[int]:
        client = self._get_client()
        rr = await self._call(
            RegisterBank.INPUT_REGISTER,
            start_address,
            client.read_input_registers(start_address, count=count, device_id=self._unit_id),
        )
        return self._registers(rr, RegisterBank.INPUT_REGISTER, start_address, count)

    async def read_holding_registers(self, start_address: int, count: int) -> list[int]:
        client = self._get_client()
        rr = await self._call(
            RegisterBank.HOLDING_REGISTER,
            start_address,
            client.read_holding_registers(start_address, count=count, device_id=self._unit_id),
        )
        return self._registers(rr, RegisterBank.HOLDING_REGISTER, start_address, count)

    @staticmethod
    def _bits(rr: Any, bank: RegisterBank, start_address: int, count: int) -> list[bool]:
        bits = getattr(rr, "bits", None)
        # bit responses are padded to a multiple of 8
        if bits is None or len(bits) < count:
            raise DeviceException("Short bit response", bank=bank.value, address=start_address)
        return [bool(b) for b in bits[:count]]

    @staticmethod
    def _registers(rr: Any, bank: RegisterBank, start_address: int, count: int) -> list[int]:
        registers = getattr(rr, "registers", None)
        if registers is None or len(registers) < count:
            raise DeviceException("Short register response", bank=bank.value, address=start_address)
        return [int(r) for r in registers[:count]]

    # -- typed writes --------------------------------------------------------

    async def write_single_coil(self, address: int, value: bool) -> None:
        client = self._get_client()
        await self._call(
            RegisterBank.COIL,
            address,
            client.write_coil(address, bool(value), device_id=self._unit_id),
        )

    async def write_single_register(self, address: int, value: int) -> None:
        client = self._get_client()
        await self._call(
            RegisterBank.HOLDING_REGISTER,
            address,
            client.write_register(address, int(value), device_id=self._unit_id),
        )

    async def write_multiple_coils(self, start_address: int, values: Sequence[bool]) -> None:
        client = self._get_client()
        await self._call(
            RegisterBank.COIL,
            start_address,
            client.write_coils(start_address, [bool(v) for v in values], device_id=self._unit_id),
        )

    async def write_multiple_registers(self, start_address: int, values: Sequence[int]) -> None:
        client = self._get_client()
        await self._call(
            RegisterBank.HOLDING_REGISTER,
            start_address,
            client.write_registers(start_address, [int(v) for v in values], device_id=self._unit_id),
        )

    # -- bank dispatch -------------------------------------------------------

    async def read(self, bank: RegisterBank, start_address: int, count: int) -> list[bool | int]:
        if bank == RegisterBank.COIL:
            return list(await self.read_coils(start_address, count))
        if bank == RegisterBank.DISCRETE_INPUT:
            return list(await self.read_discrete_inputs(start_address, count))
        if bank == RegisterBank.INPUT_REGISTER:
            return list(await self.read_input_registers(start_address, count))
        return list(await self.read_holding_registers(start_address, count))

    async def write_single(self, bank: RegisterBank, address: int, value: bool | int) -> None:
        if bank == RegisterBank.COIL:
            await self.write_single_coil(address, bool(value))
        elif bank == RegisterBank.HOLDING_REGISTER:
            await self.write_single_register(address, int(value))
        else:
            raise DeviceException(f"Write not supported for table {bank.value}", bank=bank.value, address=address)

    async def write_multiple(self, bank: RegisterBank, start_address: int, values: Sequence[bool | int]) -> None:
        if bank == RegisterBank.COIL:
            await self.write_multiple_coils(start_address, [bool(v) for v in values])
        elif bank == RegisterBank.HOLDING_REGISTER:
            await self.write_multiple_registers(start_address, [int(v) for v in values])
        else:
            raise DeviceException(
                f"Write not supported for table {bank.value}",
                bank=bank.value,
                address=start_address,
            )
