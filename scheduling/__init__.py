"""Posting-time selection from engagement history."""
