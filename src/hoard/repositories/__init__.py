"""Data-access repositories over the state store."""
