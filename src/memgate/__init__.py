"""memgate: session, transport and memory lifecycle core for the memory service client."""

__version__ = "0.1.0"
