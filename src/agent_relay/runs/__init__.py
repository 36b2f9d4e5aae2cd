"""Reasoning runs: history, orchestration loop, wake-up queue."""
