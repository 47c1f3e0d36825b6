"""SiteSync backend: peer replication of tables and content files."""

__version__ = "0.1.0"
