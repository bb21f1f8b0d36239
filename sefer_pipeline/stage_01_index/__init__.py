"""
Stage 1: Master index.

Aggregates chunk themes, concepts and books into importance-scored entries,
swaps them into the store atomically, and serves lookups through a TTL cache.
"""
