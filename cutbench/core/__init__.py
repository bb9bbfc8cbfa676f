"""Harness actors, comparison and reporting."""
