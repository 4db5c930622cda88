"""Pydantic models for configuration, desired state and phase results."""
