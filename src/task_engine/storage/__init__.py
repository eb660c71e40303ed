"""SQLite persistence for task context logs."""
