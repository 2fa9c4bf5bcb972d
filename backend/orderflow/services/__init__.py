"""Domain services for the orderflow backend."""
