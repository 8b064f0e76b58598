"""HTTP adapter for the curriculum core."""
