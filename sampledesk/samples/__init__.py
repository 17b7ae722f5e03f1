"""Training sample persistence and manual sample operations."""
