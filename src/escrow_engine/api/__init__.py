"""HTTP interface: FastAPI routes, dependencies and middleware."""
