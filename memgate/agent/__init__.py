"""Request orchestration and background consolidation scheduling."""
