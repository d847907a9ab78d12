"""Error taxonomy for the vault engine."""


class VaultError(Exception):
    """Base class for engine errors."""

    pass


class ParseFailure(VaultError):
    """Raised when a document's text cannot be turned into an outline tree.

    Never escapes ingestion: the diagnostic is stored on the document, which
    stays visible as an invalid entry.
    """

    def __init__(self, diagnostic: str, path: str | None = None, line: int | None = None):
        self.diagnostic = diagnostic
        self.path = path
        self.line = line
        super().__init__(str(self))

    def __str__(self) -> str:
        location = self.path or "<text>"
        if self.line is not None:
            location = f"{location}:{self.line}"
        return f"{location}: {self.diagnostic}"


class IoFailure(VaultError):
    """Raised when reading or writing a vault file fails."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class InvalidOperation(VaultError, ValueError):
    """Raised when a mutation is rejected before touching disk."""

    pass


class DuplicateIdentifier(InvalidOperation):
    """Raised when an identifier would be owned by two documents."""

    def __init__(self, node_id: str, owner: str, path: str):
        self.node_id = node_id
        self.owner = owner
        self.path = path
        super().__init__(f"Identifier {node_id} in {path} is already owned by {owner}")


class CacheMiss(VaultError):
    """Raised when no usable snapshot exists for the current vault fingerprint."""

    pass


class CacheCorrupt(VaultError):
    """Raised when the snapshot file exists but cannot be decoded."""

    pass
