"""Snapshot persistence for suspended runs."""
