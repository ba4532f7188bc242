"""Orchestration, output and command-line entry point."""
