"""Shared utilities: errors, logging, and retry primitives."""
