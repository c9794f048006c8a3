"""Outline — pull-request CI/CD pipeline runner with run tracking."""

__version__ = "0.1.0"
