"""Workspace sync engine."""
