"""Line-oriented interactive session on top of a Workspace."""

import asyncio
import logging
import shlex
from collections.abc import Awaitable, Callable

import typer

from .addressing import format_address, parse_bank, parse_int, parse_value
from .errors import FormatError, InvalidOperation, MacroIOError, TransportError
from .logbuffer import MemoryLogHandler
from .messages import OperationFailed
from .types import MAX_ADDRESS, Cell, CellStatus, Endpoint, RegisterBank
from .workspace import Workspace, page_bounds

logger = logging.getLogger(__name__)

# One page is 8 rows of 16 bits or 8 words
PAGE_SIZE = {
    RegisterBank.COIL: 128,
    RegisterBank.DISCRETE_INPUT: 128,
    RegisterBank.INPUT_REGISTER: 64,
    RegisterBank.HOLDING_REGISTER: 64,
}

_STATUS_MARK = {
    CellStatus.UNREAD: "?",
    CellStatus.SYNCED: " ",
    CellStatus.QUEUED: "*",
    CellStatus.IN_FLIGHT: ">",
    CellStatus.FAILED: "!",
}

HELP = """\
Commands:
  connect HOST[:PORT]          open a session (replaces the current one)
  disconnect                   close the session after pending requests finish
  read BANK ADDR [COUNT]       request a page read (default: the page holding ADDR)
  show BANK ADDR [COUNT]       print cells from the local store
  set BANK ADDR VALUE          queue a write; same value again un-queues it
  toggle ADDR                  flip a coil
  revert BANK ADDR | revert all
  queue                        list queued writes
  apply                        send queued writes and wait for the results
  refresh BANK ADDR [SECONDS]  re-read the page holding ADDR periodically (default 1s)
  refresh off                  stop the periodic re-read
  save PATH [--force]          record the queue as a macro file
  status                       connection state and counters
  log [N]                      recent log lines
  quit
Banks: coils, di, ir, hr (or 0x/1x/3x/4x)."""


def format_value(value: bool | int | None) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "1" if value else "0"
    return f"{value:05d}"


def format_cell(cell: Cell) -> str:
    line = f"{format_address(cell.bank, cell.address)} {_STATUS_MARK[cell.status]} {format_value(cell.display_value)}"
    if cell.status in (CellStatus.QUEUED, CellStatus.IN_FLIGHT):
        line += f"  (was {format_value(cell.last_known_value)})"
    if cell.error:
        line += f"  [{cell.error}]"
    return line


class Console:
    """Parses and executes one command line at a time against a Workspace."""

    def __init__(
        self,
        workspace: Workspace,
        *,
        echo: Callable[[str], None] = typer.echo,
        log_handler: MemoryLogHandler | None = None,
    ) -> None:
        self.workspace = workspace
        self._echo = echo
        self._log = log_handler
        self._commands: dict[str, Callable[[list[str]], Awaitable[None]]] = {
            "connect": self._connect,
            "disconnect": self._disconnect,
            "read": self._read,
            "show": self._show,
            "set": self._set,
            "toggle": self._toggle,
            "revert": self._revert,
            "queue": self._queue,
            "apply": self._apply,
            "refresh": self._refresh,
            "save": self._save,
            "status": self._status,
            "log": self._log_cmd,
            "help": self._help,
        }

    async def execute(self, line: str) -> bool:
        """Run one command line. Returns False when the session should end."""
        try:
            args = shlex.split(line)
        except ValueError as e:
            self._echo(f"Error: {e}")
            return True
        if not args:
            return True
        name, rest = args[0].lower(), args[1:]
        if name in ("quit", "exit"):
            return False
        handler = self._commands.get(name)
        if handler is None:
            self._echo(f"Unknown command: {name!r} (try 'help')")
            return True
        try:
            await handler(rest)
        except (InvalidOperation, ValueError) as e:
            self._echo(f"Error: {e}")
        except (FormatError, MacroIOError) as e:
            self._echo(f"Error: Macro file: {e}")
        except TransportError as e:
            self._echo(f"Error: Connection/Modbus error: {e}")
        return True

    async def run(self, read_line: Callable[[], Awaitable[str]] | None = None) -> None:
        """Read-eval loop until quit or end of input; events are pumped in the background."""
        if read_line is None:

            async def read_line() -> str:
                return await asyncio.to_thread(input, "magmod> ")

        try:
            while True:
                try:
                    line = await read_line()
                except EOFError:
                    break
                if not await self.execute(line):
                    break
        finally:
            await self.workspace.close()

    # -- argument helpers ----------------------------------------------------

    @staticmethod
    def _need(args: list[str], n: int, usage: str) -> None:
        if len(args) < n:
            raise ValueError(f"usage: {usage}")

    @staticmethod
    def _address(raw: str) -> int:
        address = int(raw, 16) if raw.lower().startswith("0x") else int(raw)
        if not (0 <= address <= MAX_ADDRESS):
            raise ValueError(f"Address out of range 0..{MAX_ADDRESS}: {address}")
        return address

    # -- commands ------------------------------------------------------------

    async def _connect(self, args: list[str]) -> None:
        self._need(args, 1, "connect HOST[:PORT]")
        endpoint = Endpoint.parse(args[0])
        self._echo(f"Connecting to {endpoint}...")
        if await self.workspace.connect(endpoint):
            self._echo(f"Connected to {endpoint}")
        else:
            self._echo(f"Error: Connection failed: {self.workspace.last_error}")

    async def _disconnect(self, args: list[str]) -> None:
        await self.workspace.disconnect()
        self._echo("Disconnected")

    async def _read(self, args: list[str]) -> None:
        self._need(args, 2, "read BANK ADDR [COUNT]")
        bank = parse_bank(args[0])
        address = self._address(args[1])
        if len(args) > 2:
            cid = await self.workspace.read_page(bank, address, parse_int(args[2]))
        else:
            cid = await self.workspace.read_page_at(bank, address, PAGE_SIZE[bank])
        self._echo(f"Read requested (#{cid})")

    async def _show(self, args: list[str]) -> None:
        self._need(args, 2, "show BANK ADDR [COUNT]")
        bank = parse_bank(args[0])
        start = self._address(args[1])
        count = parse_int(args[2]) if len(args) > 2 else 16
        for address in range(start, min(start + count, MAX_ADDRESS + 1)):
            self._echo(format_cell(self.workspace.store.get(bank, address)))

    async def _set(self, args: list[str]) -> None:
        self._need(args, 3, "set BANK ADDR VALUE")
        bank = parse_bank(args[0])
        cell = self.workspace.toggle(bank, self._address(args[1]), parse_value(bank, args[2]))
        self._echo(format_cell(cell))

    async def _toggle(self, args: list[str]) -> None:
        self._need(args, 1, "toggle ADDR")
        self._echo(format_cell(self.workspace.toggle_coil(self._address(args[0]))))

    async def _revert(self, args: list[str]) -> None:
        if args and args[0].lower() == "all":
            self._echo(f"Reverted {self.workspace.queue.revert_all()} queued writes")
            return
        self._need(args, 2, "revert BANK ADDR | revert all")
        cell = self.workspace.revert(parse_bank(args[0]), self._address(args[1]))
        self._echo(format_cell(cell))

    async def _queue(self, args: list[str]) -> None:
        items = self.workspace.queue_items()
        if not items:
            self._echo("Queue is empty")
            return
        for cell in items:
            self._echo(format_cell(cell))

    async def _apply(self, args: list[str]) -> None:
        events = await self.workspace.apply_and_wait()
        if not events:
            self._echo("Queue is empty")
            return
        failed = [e for e in events if isinstance(e, OperationFailed)]
        self._echo(f"Applied {len(events) - len(failed)}/{len(events)} requests")
        for e in failed:
            self._echo(f"  #{e.correlation_id} failed ({e.kind.value}): {e.reason}")

    async def _refresh(self, args: list[str]) -> None:
        if args and args[0].lower() == "off":
            await self.workspace.stop_refresh()
            self._echo("Refresh stopped")
            return
        self._need(args, 2, "refresh BANK ADDR [SECONDS] | refresh off")
        bank = parse_bank(args[0])
        start, count = page_bounds(self._address(args[1]), PAGE_SIZE[bank])
        count = min(count, bank.max_read)
        interval = float(args[2]) if len(args) > 2 else 1.0
        self.workspace.start_refresh(bank, start, count, interval)
        self._echo(f"Refreshing {format_address(bank, start)}..{format_address(bank, start + count - 1)} every {interval:g}s")

    async def _save(self, args: list[str]) -> None:
        self._need(args, 1, "save PATH [--force]")
        path = self.workspace.save_macro(args[0], overwrite="--force" in args[1:])
        self._echo(f"Saved {len(self.workspace.queue)} queued writes to {path}")

    async def _status(self, args: list[str]) -> None:
        ws = self.workspace
        target = f" ({ws.endpoint})" if ws.endpoint else ""
        self._echo(f"State: {ws.state.value}{target}")
        self._echo(f"Queued: {len(ws.queue)}  Outstanding: {ws.outstanding}")
        if ws.refresh_page is not None:
            bank, start, count = ws.refresh_page
            self._echo(f"Refreshing: {format_address(bank, start)}..{format_address(bank, start + count - 1)}")
        if ws.last_error:
            self._echo(f"Last error: {ws.last_error}")

    async def _log_cmd(self, args: list[str]) -> None:
        if self._log is None:
            self._echo("Log buffer not enabled")
            return
        last = parse_int(args[0]) if args else 20
        for line in self._log.lines(last):
            self._echo(line)

    async def _help(self, args: list[str]) -> None:
        self._echo(HELP)
