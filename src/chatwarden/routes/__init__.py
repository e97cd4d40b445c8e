"""Starlette route handlers."""
