#!/usr/bin/env python3
"""
SMART-E2B MCP server.

Goals:
- Run JavaScript / Python and manage files in remote sandboxes (E2B or a plain SSH host)
- Reuse sandboxes per sandboxId, renew them on use, close them when idle
- Keep stdout a clean JSON-RPC channel: anything that is not a complete frame goes to stderr
- A client that disconnects mid-call gets a neutral result instead of crashing the server
"""

from smart_e2b.main import main

if __name__ == "__main__":
    main()
