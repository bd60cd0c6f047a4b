"""Command-line interface for the packaging pipeline."""
