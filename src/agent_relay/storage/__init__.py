"""SQLite storage helpers shared by relay repositories."""
