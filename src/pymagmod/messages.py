"""Command channel contract: requests sent to the session task and the events it emits."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from .addressing import check_address, check_writable, coerce_value
from .errors import InvalidOperation
from .types import ConnectionState, Endpoint, RegisterBank

# ----------------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------------


@dataclass(frozen=True)
class ReadPage:
    bank: RegisterBank
    start_address: int
    count: int
    correlation_id: int = 0

    def __post_init__(self) -> None:
        check_address(self.bank, self.start_address, self.count)
        if self.count > self.bank.max_read:
            raise InvalidOperation(
                f"Cannot read {self.count} {self.bank.value} values in one call (max {self.bank.max_read})",
                bank=self.bank.value,
                address=self.start_address,
            )


@dataclass(frozen=True)
class WriteSingle:
    bank: RegisterBank
    address: int
    value: bool | int
    correlation_id: int = 0

    def __post_init__(self) -> None:
        check_writable(self.bank, self.address)
        check_address(self.bank, self.address)
        object.__setattr__(self, "value", coerce_value(self.bank, self.value, self.address))

    @property
    def addresses(self) -> range:
        return range(self.address, self.address + 1)

    @property
    def values(self) -> tuple[bool | int, ...]:
        return (self.value,)


@dataclass(frozen=True)
class WriteMultiple:
    bank: RegisterBank
    start_address: int
    values: tuple[bool | int, ...]
    correlation_id: int = 0

    def __post_init__(self) -> None:
        check_writable(self.bank, self.start_address)
        check_address(self.bank, self.start_address, len(self.values))
        if len(self.values) > self.bank.max_write:
            raise InvalidOperation(
                f"Cannot write {len(self.values)} {self.bank.value} values in one call (max {self.bank.max_write})",
                bank=self.bank.value,
                address=self.start_address,
            )
        object.__setattr__(
            self,
            "values",
            tuple(coerce_value(self.bank, v, self.start_address + i) for i, v in enumerate(self.values)),
        )

    @property
    def addresses(self) -> range:
        return range(self.start_address, self.start_address + len(self.values))


@dataclass(frozen=True)
class Connect:
    endpoint: Endpoint
    correlation_id: int = 0


@dataclass(frozen=True)
class Disconnect:
    correlation_id: int = 0


WriteRequest = Union[WriteSingle, WriteMultiple]
DataRequest = Union[ReadPage, WriteSingle, WriteMultiple]
Request = Union[ReadPage, WriteSingle, WriteMultiple, Connect, Disconnect]


def is_data_request(request: Request) -> bool:
    """True for requests that must resolve with exactly one terminal event."""
    return isinstance(request, (ReadPage, WriteSingle, WriteMultiple))


# ----------------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------------


class FailureKind(str, Enum):
    TRANSPORT = "transport"
    DEVICE = "device"
    NOT_CONNECTED = "not_connected"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ReadResult:
    correlation_id: int
    bank: RegisterBank
    start_address: int
    values: tuple[bool | int, ...]


@dataclass(frozen=True)
class WriteAck:
    correlation_id: int
    bank: RegisterBank
    addresses_written: tuple[int, ...]


@dataclass(frozen=True)
class OperationFailed:
    correlation_id: int
    kind: FailureKind
    reason: str
    exception_code: int | None = None


@dataclass(frozen=True)
class ConnectionStateChanged:
    new_state: ConnectionState
    reason: str | None = None
    endpoint: Endpoint | None = field(default=None, compare=False)


Event = Union[ReadResult, WriteAck, OperationFailed, ConnectionStateChanged]
TerminalEvent = Union[ReadResult, WriteAck, OperationFailed]
