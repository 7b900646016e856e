"""Background worker: handler registry, consume loop and health endpoints."""
