"""hoard error taxonomy."""

from hoard.errors.exceptions import (
    EXIT_ACQUISITION,
    EXIT_AMBIGUOUS,
    EXIT_FAMILY_ROLLBACK,
    EXIT_INTEGRITY,
    EXIT_NOT_FOUND,
    EXIT_OK,
    EXIT_PLACEMENT,
    EXIT_STORE,
    EXIT_UNEXPECTED,
    AcquisitionFailure,
    AmbiguousPackageError,
    HoardError,
    IntegrityFailure,
    NotFoundError,
    PartialFamilyRollback,
    PlacementFailure,
    RepositoryUnavailableError,
    StoreFailure,
)

__all__ = [
    "EXIT_ACQUISITION",
    "EXIT_AMBIGUOUS",
    "EXIT_FAMILY_ROLLBACK",
    "EXIT_INTEGRITY",
    "EXIT_NOT_FOUND",
    "EXIT_OK",
    "EXIT_PLACEMENT",
    "EXIT_STORE",
    "EXIT_UNEXPECTED",
    "AcquisitionFailure",
    "AmbiguousPackageError",
    "HoardError",
    "IntegrityFailure",
    "NotFoundError",
    "PartialFamilyRollback",
    "PlacementFailure",
    "RepositoryUnavailableError",
    "StoreFailure",
]
