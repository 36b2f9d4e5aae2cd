"""Job dispatch and resumable reasoning runs for remote tool-executing machines."""

__version__ = "0.1.0"
