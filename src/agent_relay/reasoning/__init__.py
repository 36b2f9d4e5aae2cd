"""Reasoning capability consumed by the run loop."""
