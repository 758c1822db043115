"""Table Archival Engine - moves aging rows from live PostgreSQL tables into archive tables."""

__version__ = "0.1.0"
