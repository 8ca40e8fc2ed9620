"""Bundled providers, runnable with ``python -m llmo.providers.<name>``."""
