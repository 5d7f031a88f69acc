"""Summary compression and the two-phase insight pipeline."""
