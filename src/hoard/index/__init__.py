"""Repository index client: fetch, normalize, cache, snapshot."""
