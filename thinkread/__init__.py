"""ThinkRead: EPUB library core (cover extraction, progress and bookmark sync)."""

__version__ = "0.2.0"
