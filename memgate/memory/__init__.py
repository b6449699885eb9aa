"""Memory scoring, packing, compaction and consolidation."""
