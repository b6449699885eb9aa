"""memgate - memory scoring, budgeting and consolidation engine."""

__version__ = "0.1.0"
