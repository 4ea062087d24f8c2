"""
Core modules.
Contains configuration, logging, metrics, error taxonomy and the
concurrency primitives (rate limiting, retry, cancellation, storage).
"""
