"""Lab request console: lifecycle management for a single lab request."""

__version__ = "0.1.0"
