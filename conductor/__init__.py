"""Declarative pipeline orchestration: dependency-aware execution, durable queuing and monitoring."""

__version__ = "1.0.0"
