"""Provisioning sequencer for the Kind-based local development environment."""

__version__ = "0.1.0"
