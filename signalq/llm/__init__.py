"""Gemini access: raw calls, prompts, JSON extraction and the analysis client."""
