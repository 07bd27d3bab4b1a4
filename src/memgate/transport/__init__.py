"""Protocol endpoint channels and the connection manager that selects between them.

Layout:
    base.py       Endpoint / ConnectionState / Channel protocol
    protocol.py   JSON-RPC message types + parse/format (no I/O)
    stdio.py      local endpoint: subprocess speaking JSON-RPC lines
    http.py       remote endpoint: JSON-RPC over HTTP POST, /health heartbeat
    direct.py     direct Memory API fallback for tool calls
    manager.py    state machine, retry/failover, health monitor
"""
