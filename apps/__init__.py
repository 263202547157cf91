"""Operator engine application packages."""
