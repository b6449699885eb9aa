"""CLI module for memgate."""
