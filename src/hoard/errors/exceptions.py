"""Custom exception classes for hoard.

Every error names the package(s) or repository involved and, for errors
raised inside the install lifecycle, the stage that was reached, so a caller
can tell "nothing happened" apart from "files written but not recorded".
"""

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_NOT_FOUND = 10
EXIT_AMBIGUOUS = 11
EXIT_ACQUISITION = 12
EXIT_INTEGRITY = 13
EXIT_PLACEMENT = 14
EXIT_FAMILY_ROLLBACK = 15
EXIT_STORE = 16


class HoardError(Exception):
    """Base exception for hoard."""

    def __init__(
        self,
        code: str,
        message: str,
        details=None,
        exit_code: int = EXIT_UNEXPECTED,
        stage: str | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        self.exit_code = exit_code
        self.stage = stage
        super().__init__(message)

    def describe(self) -> str:
        """One-line human description including the stage reached."""
        if self.stage:
            return f"{self.message} (stage: {self.stage})"
        return self.message


class NotFoundError(HoardError):
    """Query matched nothing. Carries close matches as suggestions."""

    def __init__(self, query: str, suggestions: list[str] | None = None, repo: str | None = None):
        self.query = query
        self.suggestions = suggestions or []
        where = f" in repository '{repo}'" if repo else ""
        message = f"Package '{query}' not found{where}"
        if self.suggestions:
            message += f"; did you mean: {', '.join(self.suggestions)}?"
        super().__init__(
            "NOT_FOUND",
            message,
            details={"query": query, "suggestions": self.suggestions, "repo": repo},
            exit_code=EXIT_NOT_FOUND,
        )


class AmbiguousPackageError(HoardError):
    """Multiple unqualified matches and no tie-break applies."""

    def __init__(self, query: str, candidates: list[str]):
        self.query = query
        self.candidates = candidates
        super().__init__(
            "AMBIGUOUS_PACKAGE",
            f"Package '{query}' is ambiguous; qualify it with a repository: {', '.join(candidates)}",
            details={"query": query, "candidates": candidates},
            exit_code=EXIT_AMBIGUOUS,
        )


class AcquisitionFailure(HoardError):
    """Network fetch failed permanently or exhausted its retries."""

    def __init__(self, package: str, message: str, url: str | None = None, attempts: int = 1):
        self.package = package
        self.url = url
        self.attempts = attempts
        super().__init__(
            "ACQUISITION_FAILURE",
            f"{package}: {message}",
            details={"package": package, "url": url, "attempts": attempts},
            exit_code=EXIT_ACQUISITION,
            stage="staging",
        )


class RepositoryUnavailableError(AcquisitionFailure):
    """A repository could not be reached and has no cached index."""

    def __init__(self, repo: str):
        self.repo = repo
        super().__init__(repo, "repository index unavailable and no cache exists")
        self.code = "REPOSITORY_UNAVAILABLE"
        self.stage = None


class IntegrityFailure(HoardError):
    """Size or checksum mismatch. Never retried."""

    def __init__(self, package: str, expected: str, actual: str, what: str = "checksum"):
        self.package = package
        self.expected = expected
        self.actual = actual
        super().__init__(
            "INTEGRITY_FAILURE",
            f"{package}: {what} mismatch (expected {expected}, got {actual})",
            details={"package": package, "what": what, "expected": expected, "actual": actual},
            exit_code=EXIT_INTEGRITY,
            stage="staging",
        )


class PlacementFailure(HoardError):
    """Filesystem write/permission error during place or remove."""

    def __init__(self, package: str, message: str, paths: list[str] | None = None, stage: str = "verified"):
        self.package = package
        self.paths = paths or []
        super().__init__(
            "PLACEMENT_FAILURE",
            f"{package}: {message}",
            details={"package": package, "paths": self.paths},
            exit_code=EXIT_PLACEMENT,
            stage=stage,
        )


class StoreFailure(HoardError):
    """Database unavailable or transaction error."""

    def __init__(self, message: str, packages: list[str] | None = None, stage: str | None = None):
        self.packages = packages or []
        super().__init__(
            "STORE_FAILURE",
            message,
            details={"packages": self.packages},
            exit_code=EXIT_STORE,
            stage=stage,
        )


class PartialFamilyRollback(HoardError):
    """A family member failed; every member was rolled back."""

    def __init__(self, family: str, member: str, cause: HoardError, members: list[str]):
        self.family = family
        self.member = member
        self.cause = cause
        self.members = members
        super().__init__(
            "PARTIAL_FAMILY_ROLLBACK",
            f"family {family} rolled back: member {member} failed: {cause.describe()}",
            details={
                "family": family,
                "failed_member": member,
                "members": members,
                "cause": cause.code,
            },
            exit_code=EXIT_FAMILY_ROLLBACK,
            stage=cause.stage,
        )
