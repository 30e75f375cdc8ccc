"""FastAPI dependencies: database sessions, services and the authenticated principal."""
