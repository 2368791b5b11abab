"""Database connection management."""
