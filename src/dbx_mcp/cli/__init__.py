"""Command-line interface for dbx-mcp."""
