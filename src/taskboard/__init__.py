"""Task board service: lifecycle engine, stores, and HTTP API."""
