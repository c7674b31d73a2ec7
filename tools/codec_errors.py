#!/usr/bin/env python3
"""
codec_errors.py - Error kinds raised by the PackFile codec tools

Every codec, registry and container operation reports failures by raising
one of these. Command-line entry points catch CodecError and turn it into
an exit code; library code never swallows them.
"""


class CodecError(Exception):
    """Base class for all codec and container errors."""
    pass


class MalformedField(CodecError):
    """A decoded value had an invalid discriminant or shape."""
    pass


class UnexpectedEndOfData(CodecError):
    """Decoding needed more bytes than the buffer holds."""

    def __init__(self, needed: int, pos: int, available: int, what: str = "value"):
        self.needed = needed
        self.pos = pos
        self.available = available
        super().__init__(
            f"Buffer too short for {what}: need {needed} bytes at pos {pos}, "
            f"{max(available - pos, 0)} left"
        )


class SchemaNotFound(CodecError):
    """No table definition exists for the requested table/version."""

    def __init__(self, table_name: str, version: int = None):
        self.table_name = table_name
        self.version = version
        if version is None:
            msg = f"No definitions found for table '{table_name}'"
        else:
            msg = f"No definition found for table '{table_name}' version {version}"
        super().__init__(msg)


class KeyViolation(CodecError):
    """A Loc-style key column rule was broken."""
    pass


class DuplicateKey(KeyViolation):
    """Two rows share the same key."""
    pass


class InvalidKey(KeyViolation):
    """A key is empty or contains whitespace."""
    pass


class PathCollision(CodecError):
    """An add/rename target path already exists in the container."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Path already exists in PackFile: {path}")


class CorruptContainer(CodecError):
    """The container header or index is not valid."""
    pass


class EntryNotFound(CodecError):
    """No entry (or folder) exists at the requested path."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Path not found in PackFile: {path}")


class ReadOnlyContainer(CodecError):
    """A mutating operation was attempted on a read-only container."""
    pass


class CsvImportError(CodecError):
    """A CSV/TSV file does not match the active table definition."""

    def __init__(self, message: str, line: int = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class DecoderSessionError(CodecError):
    """Invalid operation on an interactive decoder session."""
    pass
