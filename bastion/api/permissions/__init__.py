"""Permission management endpoints."""
