"""Session validation, TTL caching, failure tracking and offline fallback."""
