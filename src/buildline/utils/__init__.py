"""Shared filesystem, hashing, and subprocess helpers."""
