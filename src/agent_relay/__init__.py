"""Relay between a messaging front-end and a local CLI coding agent."""

__version__ = "0.3.0"
