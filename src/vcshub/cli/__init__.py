"""Command-line interface for vcshub."""
