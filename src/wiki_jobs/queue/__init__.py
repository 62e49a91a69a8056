"""Job queue: store, claim protocol, retries, sweeping, batches, and workers."""
