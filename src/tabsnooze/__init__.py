"""tabsnooze: defer browser tabs and reopen them when they come due."""

__version__ = "0.1.0"
