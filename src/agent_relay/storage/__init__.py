"""SQLite persistence for the relay."""
