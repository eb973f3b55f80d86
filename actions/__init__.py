"""Standalone action scripts (python -m actions.<name>)."""
