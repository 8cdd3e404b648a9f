"""Shared key-value store adapters.

Rate-limit counters, idempotency locks and cached responses all live behind
``AbstractKeyValueStore`` so the admission layer can run on an in-memory map
for a single instance, or on Redis when several instances share state.
"""
