"""Core data model: register banks, cell state, connection state, endpoint and protocol limits."""

from dataclasses import dataclass
from enum import Enum

MAX_ADDRESS = 65535
MAX_REGISTER_VALUE = 0xFFFF

# Per-call quantities allowed by the Modbus application protocol
MAX_READ_BITS = 2000
MAX_READ_REGISTERS = 125
MAX_WRITE_COILS = 1968
MAX_WRITE_REGISTERS = 123

DEFAULT_PORT = 502


class RegisterBank(str, Enum):
    """The four Modbus tables."""

    COIL = "coil"
    DISCRETE_INPUT = "discrete_input"
    INPUT_REGISTER = "input_register"
    HOLDING_REGISTER = "holding_register"

    @property
    def is_bit(self) -> bool:
        return self in (RegisterBank.COIL, RegisterBank.DISCRETE_INPUT)

    @property
    def is_writable(self) -> bool:
        return self in (RegisterBank.COIL, RegisterBank.HOLDING_REGISTER)

    @property
    def max_read(self) -> int:
        return MAX_READ_BITS if self.is_bit else MAX_READ_REGISTERS

    @property
    def max_write(self) -> int:
        return MAX_WRITE_COILS if self.is_bit else MAX_WRITE_REGISTERS

    @property
    def order(self) -> int:
        """Position used for deterministic batch ordering."""
        return _BANK_ORDER[self]


_BANK_ORDER = {bank: i for i, bank in enumerate(RegisterBank)}


class CellStatus(str, Enum):
    """Lifecycle of one (bank, address) cell."""

    UNREAD = "unread"
    SYNCED = "synced"
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


@dataclass(frozen=True)
class Cell:
    """Immutable view of one cell. Absent cells are synthesized as UNREAD with no values."""

    bank: RegisterBank
    address: int
    last_known_value: bool | int | None = None
    queued_value: bool | int | None = None
    status: CellStatus = CellStatus.UNREAD
    error: str | None = None

    @property
    def display_value(self) -> bool | int | None:
        """Queued value while an edit is pending, otherwise the last value read."""
        if self.queued_value is not None:
            return self.queued_value
        return self.last_known_value


@dataclass(frozen=True)
class Endpoint:
    """TCP target of a session."""

    host: str
    port: int = DEFAULT_PORT

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("host cannot be empty")
        if not (1 <= self.port <= 65535):
            raise ValueError(f"port must be 1-65535, got {self.port}")

    @classmethod
    def parse(cls, raw: str, default_port: int = DEFAULT_PORT) -> "Endpoint":
        """Parse ``host``, ``host:port``, ``[v6addr]`` or ``[v6addr]:port``."""
        s = raw.strip()
        if s.startswith("["):
            host, sep, rest = s[1:].partition("]")
            if not sep:
                raise ValueError(f"Malformed endpoint: {raw!r}")
            if not rest:
                return cls(host, default_port)
            if not rest.startswith(":"):
                raise ValueError(f"Malformed endpoint: {raw!r}")
            port_str = rest[1:]
        elif s.count(":") == 1:
            host, port_str = s.split(":")
        else:
            # bare host name, IPv4 or unbracketed IPv6
            return cls(s, default_port)
        try:
            port = int(port_str)
        except ValueError:
            raise ValueError(f"Invalid port in endpoint: {raw!r}") from None
        return cls(host, port)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"
