"""Safer - Safe multisig client with offline signature collection."""

__version__ = "0.1.1"
