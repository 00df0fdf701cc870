"""Shared helpers: safe background tasks and lightweight signals."""
