"""Memory lifecycle: transition table, bulk operations, audit history."""
