"""Credential stores: opaque store/get/delete persistence of auth material.

The hosting environment supplies one of these; memgate never depends on the
storage mechanism, only on the three operations.
"""
