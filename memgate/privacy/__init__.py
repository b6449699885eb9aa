"""Privacy and sentiment gating for memory writes and context assembly."""
