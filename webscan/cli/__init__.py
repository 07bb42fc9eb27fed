"""Command-line interface for webscan."""
