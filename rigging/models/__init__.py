"""Pydantic models for rigging configuration."""
