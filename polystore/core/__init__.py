"""Error types and settings shared across the package."""
