"""Status endpoints."""
