"""Convoy scheduler: staged, dependency-ordered batch dispatch of work items."""

__version__ = "0.1.0"
