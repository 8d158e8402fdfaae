"""Infrastructure adapters: database, locks, cache."""
