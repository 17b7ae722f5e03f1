"""API module for endpoint routes."""
