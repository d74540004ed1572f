"""Orchestration engine driving an AI coding-assistant CLI for a remote dashboard."""

__version__ = "0.1.0"
