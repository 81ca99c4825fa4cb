"""Small helpers shared across flowtrack."""
