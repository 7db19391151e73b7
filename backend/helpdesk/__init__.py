"""Helpdesk real-time support backend."""

__version__ = "0.1.0"
