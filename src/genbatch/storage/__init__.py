"""SQLite storage helpers, ORM tables and schema migrations."""
