#!/usr/bin/env python3
"""Example: replay a saved macro against a device through a session handle; Ctrl+C stops cleanly."""

import asyncio
import sys

from pymagmod import SessionHandle, load, replay
from pymagmod.errors import FormatError, MacroIOError, TransportError
from pymagmod.types import Endpoint


async def run(path: str) -> int:
    macro = load(path)
    endpoint = macro.endpoint or Endpoint("192.168.1.10", 502)  # fallback if none recorded
    handle = SessionHandle.start()
    try:
        await handle.connect(endpoint)
        report = await replay(macro, handle, on_directive=lambda i, d: print(d.describe()))
        await handle.disconnect()
    finally:
        await handle.close()
    print(f"{report.succeeded}/{report.total} directives applied")
    return 0 if report.ok else 1


def main() -> None:
    path = sys.argv[1] if len(sys.argv) > 1 else "setpoints.magmod"
    try:
        sys.exit(asyncio.run(run(path)))
    except KeyboardInterrupt:
        print("\nStopped.")
    except (FormatError, MacroIOError) as e:
        print(f"Macro file error: {e}", file=sys.stderr)
        sys.exit(2)
    except TransportError as e:
        print(f"Modbus/connection error: {e}", file=sys.stderr)
        sys.exit(3)


if __name__ == "__main__":
    main()
