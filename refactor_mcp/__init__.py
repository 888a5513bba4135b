"""Refactor MCP - structural refactoring tools served over HTTP and MCP."""

from .errors import RefactorError
from .executor import OperationResult, RefactoringExecutor
from .locator import ByNameAndLine, ByOffset, ByPrefixLength
from .model import CodeModel

__version__ = "0.1.0"

__all__ = [
    "ByNameAndLine",
    "ByOffset",
    "ByPrefixLength",
    "CodeModel",
    "OperationResult",
    "RefactorError",
    "RefactoringExecutor",
]
