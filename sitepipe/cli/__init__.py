"""Command-line interface for sitepipe."""
