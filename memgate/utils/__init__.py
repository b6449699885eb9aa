"""Utility helpers for memgate."""
