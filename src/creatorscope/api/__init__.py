"""HTTP surface: FastAPI app factory and routes."""
