"""Small filesystem helpers shared across the engine."""
