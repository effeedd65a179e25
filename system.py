"""
E20 Simulator Context
======================
Wires together:
  - one E20 core (e20.py) with its registers and 8K-word memory
  - an optional one- or two-level data cache (cache.py)
  - the program image loader for the assembler's machine-code format

Program images are line oriented, one word per line, addresses strictly
sequential from 0:

    ram[0] = 16'b0010000010000101;
    ram[1] = 16'b0100000000000001;   // anything may follow the ';'
"""

from __future__ import annotations
import re
from typing import Iterable, Optional

from e20 import E20, E20Error, MEM_SIZE
from cache import CacheConfig, CacheHierarchy, format_cache_config

_MACHINE_CODE_RE = re.compile(r"^ram\[(\d+)\] = 16'b([01]{16});.*$")


class LoadError(E20Error):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(msg)


# ---------------------------------------------------------------------------
#  Program loading
# ---------------------------------------------------------------------------

def parse_machine_code(lines: Iterable[str]) -> list[int]:
    """Parse program image lines into a list of words (index == address)."""
    words: list[int] = []
    for lineno, line in enumerate(lines, 1):
        line = line.rstrip("\r\n")
        m = _MACHINE_CODE_RE.match(line)
        if not m:
            raise LoadError(lineno, f"Can't parse line: {line}")
        addr = int(m.group(1))
        if addr != len(words):
            raise LoadError(lineno,
                            f"Memory addresses encountered out of sequence: {addr}")
        if addr >= MEM_SIZE:
            raise LoadError(lineno, "Program too big for memory")
        words.append(int(m.group(2), 2))
    return words


def load_machine_code_file(path: str) -> list[int]:
    # Undecodable bytes become U+FFFD and fail the line pattern below
    with open(path, "r", errors="replace") as f:
        return parse_machine_code(f)


# ---------------------------------------------------------------------------
#  E20System
# ---------------------------------------------------------------------------

class E20System:
    """An E20 core and its (optional) cache hierarchy."""

    def __init__(self, cache_config: Optional[CacheConfig] = None,
                 on_event: Optional[callable] = None,
                 on_diagnostic: Optional[callable] = None):
        self.cache_config = cache_config
        self.on_diagnostic = on_diagnostic      # called with (message)
        self.hierarchy: Optional[CacheHierarchy] = None
        if cache_config is not None:
            self.hierarchy = CacheHierarchy(cache_config, on_event=on_event)
            self.hierarchy.on_diagnostic = on_diagnostic
        self.cpu = E20(hierarchy=self.hierarchy)
        self.cpu.on_diagnostic = on_diagnostic

    # -- Loading --

    def load_program(self, words: list[int]):
        self.cpu.load_words(words, 0)

    def load_program_file(self, path: str):
        self.load_program(load_machine_code_file(path))

    # -- Execution --

    def step(self):
        return self.cpu.step()

    def run(self, max_steps: Optional[int] = None) -> int:
        return self.cpu.run(max_steps)

    @property
    def halted(self) -> bool:
        return self.cpu.halted

    def _diagnostic(self, msg: str):
        if self.on_diagnostic:
            self.on_diagnostic(msg)
        else:
            print(msg)

    # -- Introspection --

    def cache_config_lines(self) -> list[str]:
        if self.cache_config is None:
            return []
        return [format_cache_config(name, p) for name, p in self.cache_config.levels()]

    def dump_state(self, memquantity: int = 128) -> str:
        return self.cpu.dump_state(memquantity)

    def dump_cache(self, number: int) -> Optional[str]:
        """Describe cache level *number*; None if it is not configured."""
        if self.hierarchy is None:
            self._diagnostic("Not a valid cache")
            return None
        level = self.hierarchy.level(number)
        if level is None:
            return None
        return level.describe()
