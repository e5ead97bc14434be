"""Core of a Redis-backed background job server: storage, worker tracking, replies and tasks."""

__version__ = "1.9.1"