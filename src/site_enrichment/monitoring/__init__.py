"""Structured logging and performance metrics."""
