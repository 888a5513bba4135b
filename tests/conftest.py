import pytest

from refactor_mcp.backends import TextBackend
from refactor_mcp.executor import RefactoringExecutor
from refactor_mcp.model import CodeModel


@pytest.fixture
def model(tmp_path):
    return CodeModel(str(tmp_path))


@pytest.fixture
def executor(model):
    ex = RefactoringExecutor(model, [TextBackend(model)], timeout=10)
    yield ex
    ex.close()


@pytest.fixture
def write(tmp_path):
    """Write a file under tmp_path and return its absolute path as str."""

    def _write(name: str, content: str) -> str:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return str(path)

    return _write
