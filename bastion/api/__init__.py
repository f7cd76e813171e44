"""BASTION FastAPI backend."""
