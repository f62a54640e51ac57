"""Allow ``python -m src.mcp_server`` to launch the server."""

import asyncio
import sys

# Psycopg's async driver requires SelectorEventLoop on Windows.
# This MUST run before any asyncio loop is created.
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from src.mcp_server.server import main

main()
