"""RegisterStore: sparse per-bank cell state, mutated only by the interactive side."""

import logging
from collections.abc import Iterator, Sequence
from dataclasses import replace

from .addressing import check_address, check_writable, coerce_value
from .types import Cell, CellStatus, RegisterBank

logger = logging.getLogger(__name__)

_PENDING = (CellStatus.QUEUED, CellStatus.IN_FLIGHT)


class RegisterStore:
    """
    Mapping of (bank, address) to Cell. Unread cells are not stored; ``get`` synthesizes
    them, so memory grows with the cells actually touched, not with the 65536-entry banks.
    """

    def __init__(self) -> None:
        self._cells: dict[RegisterBank, dict[int, Cell]] = {bank: {} for bank in RegisterBank}

    def get(self, bank: RegisterBank, address: int) -> Cell:
        cell = self._cells[bank].get(address)
        if cell is None:
            check_address(bank, address)
            return Cell(bank, address)
        return cell

    def __len__(self) -> int:
        return sum(len(cells) for cells in self._cells.values())

    def cells(self, bank: RegisterBank) -> Iterator[Cell]:
        """Stored cells of one bank in ascending address order."""
        cells = self._cells[bank]
        for address in sorted(cells):
            yield cells[address]

    def queued(self) -> Iterator[Cell]:
        """QUEUED cells in batch order: bank order, then ascending address."""
        for bank in sorted(RegisterBank, key=lambda b: b.order):
            for cell in self.cells(bank):
                if cell.status == CellStatus.QUEUED:
                    yield cell

    def _put(self, cell: Cell) -> None:
        if cell.status == CellStatus.UNREAD and cell.last_known_value is None and cell.queued_value is None:
            self._cells[cell.bank].pop(cell.address, None)
        else:
            self._cells[cell.bank][cell.address] = cell

    def apply_read(self, bank: RegisterBank, start_address: int, values: Sequence[bool | int]) -> int:
        """
        Record values read from the device. Cells with a pending local edit (QUEUED or
        IN_FLIGHT) are left untouched. Returns the number of cells updated.
        """
        check_address(bank, start_address, max(len(values), 1))
        updated = 0
        for i, raw in enumerate(values):
            address = start_address + i
            cell = self.get(bank, address)
            if cell.status in _PENDING:
                continue
            value = bool(raw) if bank.is_bit else int(raw)
            self._put(Cell(bank, address, last_known_value=value, status=CellStatus.SYNCED))
            updated += 1
        if updated < len(values):
            logger.debug(
                "apply_read %s@%d: skipped %d pending cells",
                bank.value,
                start_address,
                len(values) - updated,
            )
        return updated

    def mark_queued(self, bank: RegisterBank, address: int, value: bool | int) -> Cell:
        check_writable(bank, address)
        check_address(bank, address)
        value = coerce_value(bank, value, address)
        cell = replace(self.get(bank, address), queued_value=value, status=CellStatus.QUEUED, error=None)
        self._put(cell)
        return cell

    def clear_queued(self, bank: RegisterBank, address: int) -> Cell:
        """Drop a pending edit; the cell falls back to SYNCED or UNREAD."""
        cell = self.get(bank, address)
        status = CellStatus.SYNCED if cell.last_known_value is not None else CellStatus.UNREAD
        cell = replace(cell, queued_value=None, status=status, error=None)
        self._put(cell)
        return cell

    def mark_in_flight(self, bank: RegisterBank, address: int) -> Cell:
        cell = self.get(bank, address)
        if cell.status != CellStatus.QUEUED:
            raise ValueError(f"{bank.value}@{address} is {cell.status.value}, not queued")
        cell = replace(cell, status=CellStatus.IN_FLIGHT)
        self._put(cell)
        return cell

    def mark_failed(self, bank: RegisterBank, address: int, reason: str) -> Cell:
        """The write did not apply: drop the queued value and record why."""
        cell = replace(self.get(bank, address), queued_value=None, status=CellStatus.FAILED, error=reason)
        self._put(cell)
        return cell

    def mark_acked(self, bank: RegisterBank, address: int, value: bool | int | None = None) -> Cell:
        """
        The device confirmed a write: the written value becomes the last known value.
        ``value`` defaults to the cell's queued value.
        """
        cell = self.get(bank, address)
        written = cell.queued_value if value is None else coerce_value(bank, value, address)
        if written is None:
            raise ValueError(f"No written value known for {bank.value}@{address}")
        cell = Cell(bank, address, last_known_value=written, status=CellStatus.SYNCED)
        self._put(cell)
        return cell
