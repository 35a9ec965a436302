"""
Macro files: a recorded, replayable sequence of write directives.

Binary layout (big-endian)::

    b"MAGMOD"  u8 version
    u8 endpoint kind (0 none, 4 IPv4, 6 IPv6, 0xFF host name)
    [4 | 16 address bytes | u8 length + UTF-8 host name]  [u16 port]   (kind != 0)
    u32 directive count
    count * (u8 function code, u16 address, u16 value)

Function code 5 writes a single coil (value 0xFF00 / 0x0000), 6 a single holding register.
"""

import ipaddress
import logging
import struct
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .addressing import check_address, check_writable, coerce_value, format_address
from .errors import FormatError, MacroIOError
from .messages import FailureKind, OperationFailed, WriteAck, WriteRequest, WriteSingle
from .queue_manager import batch_from_directives, flatten_batch
from .session import SessionHandle
from .store import RegisterStore
from .types import Endpoint, RegisterBank

logger = logging.getLogger(__name__)

MAGIC = b"MAGMOD"
FORMAT_VERSION = 1
MACRO_SUFFIX = ".magmod"

_FC_WRITE_SINGLE_COIL = 5
_FC_WRITE_SINGLE_REGISTER = 6
_COIL_ON = 0xFF00
_COIL_OFF = 0x0000

_KIND_NONE = 0
_KIND_IPV4 = 4
_KIND_IPV6 = 6
_KIND_HOSTNAME = 0xFF

_RECORD = struct.Struct(">BHH")


@dataclass(frozen=True)
class MacroDirective:
    bank: RegisterBank
    address: int
    value: bool | int

    def __post_init__(self) -> None:
        check_writable(self.bank, self.address)
        check_address(self.bank, self.address)
        object.__setattr__(self, "value", coerce_value(self.bank, self.value, self.address))

    def describe(self) -> str:
        kind = "Coil" if self.bank == RegisterBank.COIL else "Register"
        value = str(self.value).lower() if isinstance(self.value, bool) else str(self.value)
        return f"Setting {kind} {format_address(self.bank, self.address)} to {value}"


@dataclass(frozen=True)
class MacroFile:
    directives: tuple[MacroDirective, ...]
    endpoint: Endpoint | None = None
    version: int = FORMAT_VERSION

    @classmethod
    def from_batch(cls, batch: Iterable[WriteRequest], endpoint: Endpoint | None = None) -> "MacroFile":
        return cls(
            tuple(MacroDirective(bank, address, value) for bank, address, value in flatten_batch(batch)),
            endpoint=endpoint,
        )

    def __len__(self) -> int:
        return len(self.directives)

    def to_batch(self, max_span: int | None = None) -> list[WriteRequest]:
        """Coalesced write requests equivalent to the directives."""
        return batch_from_directives(((d.bank, d.address, d.value) for d in self.directives), max_span=max_span)

    def encode(self) -> bytes:
        out = bytearray(MAGIC)
        out.append(self.version)
        out.extend(_encode_endpoint(self.endpoint))
        out.extend(struct.pack(">I", len(self.directives)))
        for d in self.directives:
            if d.bank == RegisterBank.COIL:
                out.extend(_RECORD.pack(_FC_WRITE_SINGLE_COIL, d.address, _COIL_ON if d.value else _COIL_OFF))
            else:
                out.extend(_RECORD.pack(_FC_WRITE_SINGLE_REGISTER, d.address, int(d.value)))
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes, path: Path | None = None) -> "MacroFile":
        reader = _Reader(data, path)
        if reader.take(len(MAGIC)) != MAGIC:
            raise FormatError("Bad header: not a macro file", path=path, offset=0)
        version = reader.u8()
        if version != FORMAT_VERSION:
            raise FormatError(f"Unsupported macro version {version} (expected {FORMAT_VERSION})", path=path)
        endpoint = _decode_endpoint(reader)
        count = reader.u32()
        directives: list[MacroDirective] = []
        for _ in range(count):
            offset = reader.pos
            code, address, raw = _RECORD.unpack(reader.take(_RECORD.size))
            if code == _FC_WRITE_SINGLE_COIL:
                if raw not in (_COIL_ON, _COIL_OFF):
                    raise FormatError(f"Invalid coil value 0x{raw:04X}", path=path, offset=offset)
                directives.append(MacroDirective(RegisterBank.COIL, address, raw == _COIL_ON))
            elif code == _FC_WRITE_SINGLE_REGISTER:
                directives.append(MacroDirective(RegisterBank.HOLDING_REGISTER, address, raw))
            else:
                raise FormatError(f"Unsupported command code {code}", path=path, offset=offset)
        if reader.remaining:
            raise FormatError(f"{reader.remaining} trailing bytes after last directive", path=path, offset=reader.pos)
        return cls(tuple(directives), endpoint=endpoint, version=version)


class _Reader:
    def __init__(self, data: bytes, path: Path | None) -> None:
        self._data = data
        self._path = path
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self.pos

    def take(self, n: int) -> bytes:
        if self.remaining < n:
            raise FormatError("Unexpected end of file", path=self._path, offset=self.pos)
        chunk = self._data[self.pos : self.pos + n]
        self.pos += n
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return int.from_bytes(self.take(2), "big")

    def u32(self) -> int:
        return int.from_bytes(self.take(4), "big")


def _encode_endpoint(endpoint: Endpoint | None) -> bytes:
    if endpoint is None:
        return bytes([_KIND_NONE])
    try:
        ip = ipaddress.ip_address(endpoint.host)
    except ValueError:
        name = endpoint.host.encode("utf-8")
        if len(name) > 255:
            raise MacroIOError(f"Host name too long for macro file: {endpoint.host!r}") from None
        head = bytes([_KIND_HOSTNAME, len(name)]) + name
    else:
        head = bytes([_KIND_IPV4 if ip.version == 4 else _KIND_IPV6]) + ip.packed
    return head + endpoint.port.to_bytes(2, "big")


def _decode_endpoint(reader: _Reader) -> Endpoint | None:
    kind = reader.u8()
    if kind == _KIND_NONE:
        return None
    if kind == _KIND_IPV4:
        host = str(ipaddress.IPv4Address(reader.take(4)))
    elif kind == _KIND_IPV6:
        host = str(ipaddress.IPv6Address(reader.take(16)))
    elif kind == _KIND_HOSTNAME:
        try:
            host = reader.take(reader.u8()).decode("utf-8")
        except UnicodeDecodeError:
            raise FormatError("Host name is not valid UTF-8", offset=reader.pos) from None
    else:
        raise FormatError(f"Unknown endpoint kind {kind}", offset=reader.pos - 1)
    port = reader.u16()
    try:
        return Endpoint(host, port)
    except ValueError as e:
        raise FormatError(f"Invalid endpoint in macro: {e}") from None


def save(
    batch: Iterable[WriteRequest],
    path: str | Path,
    *,
    endpoint: Endpoint | None = None,
    overwrite: bool = False,
) -> Path:
    """
    Write the batch's directives, in batch order, to a macro file. A path without a
    suffix gets ``.magmod``. Refuses to replace an existing file unless ``overwrite``.
    Returns the path written.
    """
    target = Path(path)
    if not target.suffix:
        target = target.with_suffix(MACRO_SUFFIX)
    macro = MacroFile.from_batch(batch, endpoint=endpoint)
    data = macro.encode()
    try:
        with open(target, "wb" if overwrite else "xb") as f:
            f.write(data)
    except FileExistsError as e:
        raise MacroIOError(f"Macro file already exists: {target}", path=target, cause=e) from e
    except OSError as e:
        raise MacroIOError(f"Cannot write macro file {target}: {e}", path=target, cause=e) from e
    logger.info("Saved %d directives to %s", len(macro), target)
    return target


def load(path: str | Path) -> MacroFile:
    """Read and validate a whole macro file; raises FormatError or MacroIOError."""
    source = Path(path)
    try:
        data = source.read_bytes()
    except OSError as e:
        raise MacroIOError(f"Cannot read macro file {source}: {e}", path=source, cause=e) from e
    try:
        macro = MacroFile.decode(data, path=source)
    except FormatError as e:
        if e.path is None:
            e.path = source
        raise
    logger.debug("Loaded %d directives from %s", len(macro), source)
    return macro


@dataclass
class ReplayReport:
    total: int
    succeeded: int = 0
    failures: list[tuple[int, OperationFailed]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def stopped_at(self) -> int | None:
        """Index of the directive that stopped the replay, if any."""
        return self.failures[0][0] if self.failures else None


async def replay(
    macro: MacroFile,
    handle: SessionHandle,
    *,
    store: RegisterStore | None = None,
    keep_going: bool = False,
    on_directive: Callable[[int, MacroDirective], None] | None = None,
) -> ReplayReport:
    """
    Send each directive as a WriteSingle, waiting for its terminal event before the
    next. Stops at the first failure unless ``keep_going``; successful writes are
    never rolled back. With ``store``, acknowledged writes are recorded as SYNCED.
    """
    report = ReplayReport(total=len(macro))
    for index, directive in enumerate(macro.directives):
        if on_directive is not None:
            on_directive(index, directive)
        logger.info("%s", directive.describe())
        request = await handle.submit(WriteSingle(directive.bank, directive.address, directive.value))
        event = await handle.wait_for(request.correlation_id)
        if isinstance(event, WriteAck):
            report.succeeded += 1
            if store is not None:
                store.mark_acked(directive.bank, directive.address, directive.value)
            continue
        if not isinstance(event, OperationFailed):
            event = OperationFailed(request.correlation_id, FailureKind.DEVICE, f"Unexpected reply {event!r}")
        logger.warning("Directive %d failed (%s): %s", index, event.kind.value, event.reason)
        report.failures.append((index, event))
        if not keep_going:
            break
    return report
