"""Outbound notification delivery."""
