"""Entry point: python -m memgate [status]

- "status": print authentication and connection status (diagnostic only)
"""

from __future__ import annotations

import asyncio
import logging
import sys

from memgate.config import load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


async def _status() -> int:
    from memgate.core import Memgate
    from memgate.credentials.base import redact
    from memgate.errors import MemgateError

    config = load_config()
    _setup_logging(config.log_level)

    async with Memgate.from_config(config) as gate:
        credential = await gate.context.session.credential()
        auth = await gate.is_authenticated()
        print(f"API:         {config.api_url}")
        print(f"Credential:  {redact(credential)}")
        print(f"Auth:        {auth.state}" + (f" ({auth.reason})" if auth.reason else ""))

        if config.transport.endpoints:
            try:
                result = await gate.connect()
            except MemgateError as e:
                print(f"Transport:   unavailable ({e})")
            else:
                where = result.endpoint.uri if result.endpoint else "direct API"
                print(f"Transport:   {result.mode} via {where}")
        status = gate.connection_status()
        print(f"Connection:  {status.state.value}" + (" (direct API)" if status.direct_api else ""))
    return 0 if auth.authenticated else 1


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "status"

    if cmd == "status":
        sys.exit(asyncio.run(_status()))
    else:
        print("Usage: python -m memgate [status]")
        print("  status  Show authentication and connection status (default)")
        sys.exit(1)


if __name__ == "__main__":
    main()
