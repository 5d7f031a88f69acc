"""Deterministic signal gate."""
