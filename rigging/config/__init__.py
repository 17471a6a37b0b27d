"""Configuration loading for rigging."""
