"""
Keystone - Command Line Interface

Main CLI entry point for the lifecycle orchestrator.
"""
from cli.main import app, main

__all__ = ["app", "main"]
