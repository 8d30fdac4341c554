"""Gemini client, rate limiting and the exception hierarchy."""
