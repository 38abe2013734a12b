"""Greeting notifications: per-identity cooldown gate and delivery sinks."""
