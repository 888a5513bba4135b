#!/usr/bin/env python3
"""
Refactor MCP - Errors

Every failure that can reach a client is a RefactorError with a stable
`kind` string. The dispatcher turns these into error envelopes.
"""


class RefactorError(Exception):
    kind = "Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(RefactorError):
    """File, element or directory absent."""
    kind = "NotFound"


class Ambiguous(RefactorError):
    """Several same-named declarations and nothing to pick one with."""
    kind = "Ambiguous"

    def __init__(self, message: str, candidates: list | None = None):
        super().__init__(message)
        self.candidates = candidates or []


class BadRequest(RefactorError):
    kind = "BadRequest"

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class UnknownTool(RefactorError):
    kind = "UnknownTool"


class NotWritable(RefactorError):
    kind = "NotWritable"


class BackendFailure(RefactorError):
    """The code model or refactoring engine raised or reported failure."""
    kind = "BackendFailure"


class UnsafeDelete(BackendFailure):
    """Safe delete refused because references remain."""

    def __init__(self, message: str, references: list | None = None):
        super().__init__(message)
        self.references = references or []


class OperationTimeout(RefactorError):
    kind = "Timeout"


class BindFailure(RefactorError):
    kind = "BindFailure"
