"""Tool definitions consumed by job creation and runs."""
