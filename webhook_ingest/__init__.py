"""Payment webhook ingestion with idempotent, retryable processing."""
