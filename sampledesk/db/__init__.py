"""Database models, session factory and dataset-file data access."""
