"""Store protocols and their SQLAlchemy implementations."""
