"""Persisted state: schema and the store handle."""
