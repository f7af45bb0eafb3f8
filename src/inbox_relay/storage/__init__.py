"""SQLite storage for the task journal."""
