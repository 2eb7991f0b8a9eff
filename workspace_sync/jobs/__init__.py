"""Background jobs and the worker runner."""
