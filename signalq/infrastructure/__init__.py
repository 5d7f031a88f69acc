"""Database, rate limiting and idempotency plumbing."""
