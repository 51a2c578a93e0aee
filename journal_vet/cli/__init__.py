"""Command-line interface for the journal-vet workspace core."""

from .runner import build_parser, main

__all__ = ["build_parser", "main"]
