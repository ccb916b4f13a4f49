"""Temporal distribution, deterministic randomness, segments and secondary activity scheduling."""
