"""SQLAlchemy ORM models - import all to register with Base.metadata."""

from hoard.db.models.package import PackageRow, PortablePackageRow

__all__ = [
    "PackageRow",
    "PortablePackageRow",
]
