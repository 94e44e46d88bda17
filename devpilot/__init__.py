"""devpilot: orchestration core for an interactive coding assistant."""

__version__ = "0.1.0"
