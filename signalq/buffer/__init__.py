"""Per-conversation event windows with silence and volume triggers."""
