"""Chat command parsing, gating and handlers."""
