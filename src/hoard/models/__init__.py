"""Transient (non-persisted) models."""
