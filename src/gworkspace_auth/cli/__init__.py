"""Command-line interface for gworkspace-auth."""
