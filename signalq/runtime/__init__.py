"""Process wiring."""
