"""HTTP API package: FastAPI schemas, dependencies and database tables."""
