"""String enums shared across hoard."""

from enum import StrEnum


class IndexFormatName(StrEnum):
    FLAT = "flat"
    GROUPED = "grouped"


class InstallStage(StrEnum):
    REQUESTED = "requested"
    STAGING = "staging"
    VERIFIED = "verified"
    PLACED = "placed"
    COMMITTED = "committed"
    FAILED = "failed"


class HashAlgorithm(StrEnum):
    SHA256 = "sha256"
    SHA512 = "sha512"
    BLAKE2B = "blake2b"


class ReconcileAction(StrEnum):
    PURGED = "purged"
    REPAIRED = "repaired"
    COLLECTED = "collected"
    CLEANED = "cleaned"


class InstallAction(StrEnum):
    INSTALLED = "installed"
    UPGRADED = "upgraded"
    REINSTALLED = "reinstalled"
    UNCHANGED = "unchanged"
    FAILED = "failed"
