"""Staged, resumable AI-fit analysis pipeline."""

__version__ = "0.1.0"
