"""Asynchronous video transcoding pipeline and job queue."""

__version__ = "0.1.0"
