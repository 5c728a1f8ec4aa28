"""Core services: resolution, acquisition, placement, installation, GC."""
