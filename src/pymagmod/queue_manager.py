"""QueueManager: pending edits, batch building with range coalescing, and clearing after apply."""

import logging
from collections.abc import Iterable, Sequence

from .addressing import check_writable, coerce_value
from .errors import InvalidOperation
from .messages import WriteMultiple, WriteRequest, WriteSingle
from .store import RegisterStore
from .types import Cell, CellStatus, RegisterBank

logger = logging.getLogger(__name__)


def _coalesce_ranges(offset_to_value: dict[int, bool | int]) -> list[tuple[int, list[bool | int]]]:
    """
    Group (offset, value) into contiguous ranges. Returns list of (start_offset, [values, ...]).
    """
    if not offset_to_value:
        return []
    sorted_offsets = sorted(offset_to_value.keys())
    ranges: list[tuple[int, list[bool | int]]] = []
    start = sorted_offsets[0]
    prev = start
    group: list[bool | int] = [offset_to_value[start]]
    for off in sorted_offsets[1:]:
        if off == prev + 1:
            group.append(offset_to_value[off])
        else:
            ranges.append((start, group))
            start = off
            group = [offset_to_value[off]]
        prev = off
    ranges.append((start, group))
    return ranges


def _chunk(bank: RegisterBank, start: int, values: list[bool | int], max_span: int) -> list[WriteRequest]:
    out: list[WriteRequest] = []
    for i in range(0, len(values), max_span):
        part = values[i : i + max_span]
        if len(part) == 1:
            out.append(WriteSingle(bank, start + i, part[0]))
        else:
            out.append(WriteMultiple(bank, start + i, tuple(part)))
    return out


def batch_from_directives(
    directives: Iterable[tuple[RegisterBank, int, bool | int]],
    max_span: int | None = None,
) -> list[WriteRequest]:
    """
    Build write requests from (bank, address, value) triples. Contiguous addresses of
    the same bank collapse into WriteMultiple, split into chunks of at most ``max_span``
    (default: the protocol limit of the bank). Output is ordered by bank, then address.
    A later triple for the same cell replaces an earlier one.
    """
    by_bank: dict[RegisterBank, dict[int, bool | int]] = {}
    for bank, address, value in directives:
        check_writable(bank, address)
        by_bank.setdefault(bank, {})[address] = coerce_value(bank, value, address)

    batch: list[WriteRequest] = []
    for bank in sorted(by_bank, key=lambda b: b.order):
        span = bank.max_write if max_span is None else max_span
        if not (1 <= span <= bank.max_write):
            raise InvalidOperation(f"max_span must be 1..{bank.max_write} for {bank.value}, got {span}")
        for start, values in _coalesce_ranges(by_bank[bank]):
            batch.extend(_chunk(bank, start, values, span))
    return batch


def flatten_batch(batch: Iterable[WriteRequest]) -> list[tuple[RegisterBank, int, bool | int]]:
    """Expand write requests into ordered (bank, address, value) triples."""
    out: list[tuple[RegisterBank, int, bool | int]] = []
    for op in batch:
        for address, value in zip(op.addresses, op.values):
            out.append((op.bank, address, value))
    return out


class QueueManager:
    """
    Tracks cells marked for write in a RegisterStore and turns them into an ordered
    batch of write requests.
    """

    def __init__(self, store: RegisterStore, max_span: int | None = None) -> None:
        self._store = store
        self._max_span = max_span

    @property
    def store(self) -> RegisterStore:
        return self._store

    def toggle(self, bank: RegisterBank, address: int, value: bool | int) -> Cell:
        """
        Queue ``value`` for the cell. Queuing the value that is already queued
        un-queues the cell instead. Cells with a write in flight cannot be edited.
        """
        check_writable(bank, address)
        value = coerce_value(bank, value, address)
        cell = self._store.get(bank, address)
        if cell.status == CellStatus.IN_FLIGHT:
            raise InvalidOperation(f"{bank.value}@{address} has a write in flight", bank=bank.value, address=address)
        if cell.status == CellStatus.QUEUED and cell.queued_value == value:
            logger.debug("Un-queue %s@%d", bank.value, address)
            return self._store.clear_queued(bank, address)
        logger.debug("Queue %s@%d = %r", bank.value, address, value)
        return self._store.mark_queued(bank, address, value)

    def revert(self, bank: RegisterBank, address: int) -> Cell:
        """Drop a queued edit regardless of its value."""
        cell = self._store.get(bank, address)
        if cell.status != CellStatus.QUEUED:
            return cell
        return self._store.clear_queued(bank, address)

    def revert_all(self) -> int:
        cells = list(self._store.queued())
        for cell in cells:
            self._store.clear_queued(cell.bank, cell.address)
        return len(cells)

    def queued(self) -> list[Cell]:
        return list(self._store.queued())

    def __len__(self) -> int:
        return sum(1 for _ in self._store.queued())

    def build_batch(self, max_span: int | None = None) -> list[WriteRequest]:
        """Ordered write requests for every QUEUED cell; see ``batch_from_directives``."""
        span = self._max_span if max_span is None else max_span
        return batch_from_directives(
            ((cell.bank, cell.address, cell.queued_value) for cell in self._store.queued()),
            max_span=span,
        )

    def mark_in_flight(self, batch: Sequence[WriteRequest]) -> None:
        for op in batch:
            for address in op.addresses:
                self._store.mark_in_flight(op.bank, address)

    def clear_applied(self, batch: Sequence[WriteRequest]) -> None:
        """
        Remove queued state for every address the batch covered, recording the written
        values as last known. Call only once every operation in ``batch`` was confirmed.
        """
        for op in batch:
            for address, value in zip(op.addresses, op.values):
                self._store.mark_acked(op.bank, address, value)
