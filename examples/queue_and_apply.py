#!/usr/bin/env python3
"""Example: read a page of holding registers, queue two edits, apply them and save the queue as a macro."""

import asyncio
import sys

from pymagmod import Endpoint, RegisterBank, Workspace
from pymagmod.errors import InvalidOperation, MacroIOError
from pymagmod.messages import OperationFailed
from pymagmod.session import default_client_factory


async def run() -> int:
    endpoint = Endpoint("192.168.1.10", 502)  # change to your device
    ws = Workspace(default_client_factory(unit_id=1, timeout=3.0))
    try:
        if not await ws.connect(endpoint):
            print(f"Connection failed: {ws.last_error}", file=sys.stderr)
            return 1

        await ws.read_page_and_wait(RegisterBank.HOLDING_REGISTER, 0, 16)
        for cell in ws.store.cells(RegisterBank.HOLDING_REGISTER):
            print(f"HR {cell.address} = {cell.last_known_value}")

        ws.toggle(RegisterBank.HOLDING_REGISTER, 10, 100)
        ws.toggle(RegisterBank.HOLDING_REGISTER, 11, 200)
        print(f"Batch: {ws.queue.build_batch()}")

        # Record before applying: applying empties the queue
        path = ws.save_macro("setpoints", overwrite=True)
        print(f"Saved macro to {path}")

        for event in await ws.apply_and_wait():
            if isinstance(event, OperationFailed):
                print(f"Request #{event.correlation_id} failed: {event.reason}", file=sys.stderr)
        return 0
    except (InvalidOperation, MacroIOError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await ws.close()


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
