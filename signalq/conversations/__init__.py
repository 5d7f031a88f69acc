"""Conversation models, repositories and the state store facade."""
