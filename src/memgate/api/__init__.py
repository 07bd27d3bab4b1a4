"""Async HTTP client for the external Memory API."""
