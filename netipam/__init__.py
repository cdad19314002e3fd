"""Network asset reachability, uptime and topology reconciliation."""

__version__ = "0.1.0"
