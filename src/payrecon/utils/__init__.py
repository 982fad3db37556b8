"""Utility helpers shared across payrecon services."""
