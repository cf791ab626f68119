"""Lifecycle engine, usage stats, and notification sinks."""
