"""pymagmod: interactive Modbus TCP client engine with write queue and macro replay, on pymodbus."""

__version__ = "0.1.0"

from .errors import (
    DeviceException,
    FormatError,
    InvalidOperation,
    MacroIOError,
    PyMagmodError,
    TransportError,
)
from .macro import MacroDirective, MacroFile, ReplayReport, load, replay, save
from .messages import (
    Connect,
    ConnectionStateChanged,
    Disconnect,
    FailureKind,
    OperationFailed,
    ReadPage,
    ReadResult,
    WriteAck,
    WriteMultiple,
    WriteSingle,
)
from .protocol import ModbusProtocolClient
from .queue_manager import QueueManager
from .session import SessionHandle, SessionTask
from .store import RegisterStore
from .types import Cell, CellStatus, ConnectionState, Endpoint, RegisterBank
from .workspace import Workspace

__all__ = [
    "__version__",
    "DeviceException",
    "FormatError",
    "InvalidOperation",
    "MacroIOError",
    "PyMagmodError",
    "TransportError",
    "MacroDirective",
    "MacroFile",
    "ReplayReport",
    "load",
    "replay",
    "save",
    "Connect",
    "ConnectionStateChanged",
    "Disconnect",
    "FailureKind",
    "OperationFailed",
    "ReadPage",
    "ReadResult",
    "WriteAck",
    "WriteMultiple",
    "WriteSingle",
    "ModbusProtocolClient",
    "QueueManager",
    "SessionHandle",
    "SessionTask",
    "RegisterStore",
    "Cell",
    "CellStatus",
    "ConnectionState",
    "Endpoint",
    "RegisterBank",
    "Workspace",
]
