"""Expense import and classification engine."""

__version__ = "0.1.0"
