"""Incremental bulk-export coordinator.

Partitions a provider's record space into bounded export jobs, tracks them
against the provider's concurrent-job quota, and merges finished output into
a tabular sink behind a durable, monotonic watermark.
"""

__version__ = "1.0.0"
