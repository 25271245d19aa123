"""Utility helpers for the agent bridge SDK."""
