"""Media jobs service: analysis/fix jobs, deduplication and credits."""
