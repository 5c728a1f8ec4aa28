"""hoard: a package manager for portable Linux application bundles."""

__version__ = "0.1.0"
