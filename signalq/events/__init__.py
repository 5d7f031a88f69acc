"""Chat event parsing and noise filtering."""
