"""Jobs module - submission, deduplication, job store and dispatch."""
