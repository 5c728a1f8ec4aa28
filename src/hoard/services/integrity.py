"""Checksum parsing and computation for downloaded artifacts."""

import hashlib
from pathlib import Path

from hoard.models.enums import HashAlgorithm

_HEX_LENGTHS = {
    64: HashAlgorithm.SHA256,
    128: HashAlgorithm.SHA512,
}


def parse_checksum(checksum: str) -> tuple[HashAlgorithm, str]:
    """Split ``"<alg>:<hex>"`` into its parts.

    A bare digest is taken as sha256 (or sha512 by length).
    """
    text = checksum.strip()
    if ":" in text:
        alg, _, digest = text.partition(":")
        try:
            return HashAlgorithm(alg.lower()), digest.lower()
        except ValueError:
            raise ValueError(f"Unsupported checksum algorithm: {alg}") from None
    return _HEX_LENGTHS.get(len(text), HashAlgorithm.SHA256), text.lower()


def new_hasher(algorithm: HashAlgorithm):
    return hashlib.new(algorithm.value)


def format_checksum(algorithm: HashAlgorithm, digest: str) -> str:
    return f"{algorithm.value}:{digest}"


def file_checksum(path: Path, algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> str:
    """Hex digest of *path*, read in chunks."""
    hasher = new_hasher(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def matches(path: Path, checksum: str) -> bool:
    """True when *path* exists and hashes to *checksum*."""
    if not path.is_file():
        return False
    algorithm, digest = parse_checksum(checksum)
    return file_checksum(path, algorithm) == digest


def same_checksum(a: str, b: str) -> bool:
    """Compare two checksums regardless of how the algorithm is spelled."""
    try:
        return parse_checksum(a) == parse_checksum(b)
    except ValueError:
        return False
