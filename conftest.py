"""
Pytest configuration for the E20 simulator test suite.

    python -m pytest                 # everything
    python -m pytest -k Cache        # a subset

Fixtures here are for the CLI tests, which work on real files.
"""

import pytest

from asm import assemble, to_machine_code


@pytest.fixture
def program_file(tmp_path):
    """Factory: assemble source text into a program image file, return its path."""
    counter = [0]

    def _make(source: str) -> str:
        counter[0] += 1
        path = tmp_path / f"prog{counter[0]}.bin"
        path.write_text(to_machine_code(assemble(source)))
        return str(path)

    return _make


@pytest.fixture
def raw_file(tmp_path):
    """Factory: write arbitrary text to a file, return its path."""
    def _make(text: str, name: str = "raw.bin") -> str:
        path = tmp_path / name
        path.write_text(text)
        return str(path)

    return _make
