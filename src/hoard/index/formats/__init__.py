"""Index format registry: maps a format name to a lazy-import class path."""

from hoard.index.formats.base import IndexFormat
from hoard.models.enums import IndexFormatName

AVAILABLE_FORMATS: dict[str, str] = {
    IndexFormatName.FLAT: "hoard.index.formats.flat.FlatIndexFormat",
    IndexFormatName.GROUPED: "hoard.index.formats.grouped.GroupedIndexFormat",
}


def import_format(dotted_path: str):
    """Import an index format class from its dotted module path."""
    import importlib

    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)


def get_format(name: str) -> IndexFormat:
    """Instantiate the format registered under *name*."""
    try:
        dotted = AVAILABLE_FORMATS[name]
    except KeyError:
        raise ValueError(f"Unknown index format: {name}") from None
    return import_format(dotted)()
