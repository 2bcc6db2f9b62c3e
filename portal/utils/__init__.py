"""Utility helpers for the portal."""
