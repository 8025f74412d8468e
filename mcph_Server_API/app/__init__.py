"""FastAPI application package for the MCP crates server."""
