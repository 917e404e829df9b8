"""Workflow automation backend: execution engine, logging, scheduling and API."""

__version__ = "0.1.0"
