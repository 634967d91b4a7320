"""Reader error kinds. Every failed decode ends in exactly one of these."""


class ReaderError(Exception):
    """Base class for decode failures."""
    kind = "reader"

    def __str__(self):
        msg = super().__str__()
        return f"{self.kind}: {msg}" if msg else self.kind


class NotFoundError(ReaderError):
    """The symbol (or a structural part of it) could not be located."""
    kind = "not found"


class FormatError(ReaderError):
    """The sampled grid is not a structurally valid QR encoding."""
    kind = "format"


class ChecksumError(ReaderError):
    """The grid is well formed but error correction could not repair it."""
    kind = "checksum"
