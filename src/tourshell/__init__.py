"""tourshell — terminal sessions for an in-browser learning platform."""

__version__ = "0.1.0"
