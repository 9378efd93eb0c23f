"""Server domain models."""
