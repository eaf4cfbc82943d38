"""Text, ISBN and cover helpers shared across services."""
