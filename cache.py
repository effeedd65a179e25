"""
E20 Data Cache Model
=====================
Set-associative cache levels with per-row LRU replacement, and the
one- or two-level hierarchy that sits between the E20 core and memory.

Address mapping, per level:

    block  = addr // blocksize
    row    = block %  rows
    tag    = block // rows
    offset = addr %  blocksize

The model is write-through: stores always reach memory first and then
(re)install the containing block at every level.  A hit in L2 does not
promote the block into L1.
"""

from __future__ import annotations
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterator, NamedTuple, Optional

from e20 import E20Error

# ---------------------------------------------------------------------------
#  Event kinds
# ---------------------------------------------------------------------------

HIT  = "HIT"
MISS = "MISS"
SW   = "SW"


class CacheConfigError(E20Error):
    pass


# ---------------------------------------------------------------------------
#  Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LevelParams:
    """Geometry of one cache level, in words."""
    size: int
    assoc: int
    blocksize: int

    @property
    def rows(self) -> int:
        return self.size // (self.assoc * self.blocksize)


@dataclass(frozen=True)
class CacheConfig:
    l1: LevelParams
    l2: Optional[LevelParams] = None

    @classmethod
    def parse(cls, text: str) -> CacheConfig:
        """Parse 'size,assoc,blocksize' or two such triples."""
        try:
            parts = [int(p) for p in text.split(",")]
        except ValueError:
            raise CacheConfigError(f"Invalid cache config: {text!r}") from None
        if len(parts) not in (3, 6):
            raise CacheConfigError(
                f"Invalid cache config: expected 3 or 6 values, got {len(parts)}")
        levels = [LevelParams(*parts[i:i + 3]) for i in range(0, len(parts), 3)]
        for name, p in zip(("L1", "L2"), levels):
            if p.size <= 0 or p.assoc <= 0 or p.blocksize <= 0 or p.rows == 0:
                raise CacheConfigError(
                    f"Invalid cache config for {name}: size={p.size} "
                    f"assoc={p.assoc} blocksize={p.blocksize}")
        return cls(*levels)

    def levels(self) -> list[tuple[str, LevelParams]]:
        out = [("L1", self.l1)]
        if self.l2 is not None:
            out.append(("L2", self.l2))
        return out


# ---------------------------------------------------------------------------
#  Recency tracking
# ---------------------------------------------------------------------------

class RecencyList:
    """Ordered set of way indices: least recently used first."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._order: OrderedDict[int, None] = OrderedDict()

    def touch(self, way: int):
        """Mark way most recently used, inserting it if absent."""
        if way not in self._order and len(self._order) >= self.capacity:
            raise ValueError(f"row already holds {self.capacity} ways")
        self._order[way] = None
        self._order.move_to_end(way)

    def evict_oldest(self) -> int:
        way, _ = self._order.popitem(last=False)
        return way

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[int]:
        return iter(self._order)

    def __contains__(self, way: int) -> bool:
        return way in self._order

    def __repr__(self) -> str:
        return f"RecencyList({list(self._order)})"


# ---------------------------------------------------------------------------
#  Cache level
# ---------------------------------------------------------------------------

@dataclass
class Way:
    valid: bool = False
    tag: int = 0
    data: list[int] = field(default_factory=list)


class CacheLevel:
    """One set-associative level: rows x ways, LRU within a row."""

    def __init__(self, name: str, params: LevelParams):
        self.name = name
        self.params = params
        self.rows = params.rows
        self.assoc = params.assoc
        self.blocksize = params.blocksize
        self.ways: list[list[Way]] = [
            [Way() for _ in range(self.assoc)] for _ in range(self.rows)]
        self.recency: list[RecencyList] = [
            RecencyList(self.assoc) for _ in range(self.rows)]

    def locate(self, addr: int) -> tuple[int, int, int]:
        """Return (row, tag, offset) for a word address."""
        block = addr // self.blocksize
        return block % self.rows, block // self.rows, addr % self.blocksize

    def _find(self, row: int, tag: int) -> Optional[int]:
        for i, way in enumerate(self.ways[row]):
            if way.valid and way.tag == tag:
                return i
        return None

    def resident(self, addr: int) -> bool:
        """True if addr's block is cached here.  Does not touch recency."""
        row, tag, _ = self.locate(addr)
        return self._find(row, tag) is not None

    def read(self, addr: int) -> Optional[int]:
        """Return the cached word on a hit (marking it MRU), else None."""
        row, tag, offset = self.locate(addr)
        i = self._find(row, tag)
        if i is None:
            return None
        self.recency[row].touch(i)
        return self.ways[row][i].data[offset]

    def fill(self, memory: list[int], addr: int) -> int:
        """Install addr's block from memory.  Returns the way written.

        A free way is used if the row has one, otherwise the row's LRU
        way is overwritten.  No check is made for the block already being
        resident.
        """
        row, tag, _ = self.locate(addr)
        base = (addr // self.blocksize) * self.blocksize
        n = len(memory)
        data = [memory[(base + i) % n] for i in range(self.blocksize)]

        victim = None
        for i, way in enumerate(self.ways[row]):
            if not way.valid:
                victim = i
                break
        if victim is None:
            victim = self.recency[row].evict_oldest()

        way = self.ways[row][victim]
        way.valid = True
        way.tag = tag
        way.data = data
        self.recency[row].touch(victim)
        return victim

    def occupancy(self) -> int:
        return sum(way.valid for ways in self.ways for way in ways)

    def describe(self) -> str:
        """Valid ways per row, least recently used first."""
        lines = [format_cache_config(self.name, self.params)]
        for row in range(self.rows):
            for i in self.recency[row]:
                way = self.ways[row][i]
                words = " ".join(f"{w:04x}" for w in way.data)
                lines.append(f"  row {row:4d}: way {i:2d} tag {way.tag:5d} [{words}]")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
#  Log formatting
# ---------------------------------------------------------------------------

class CacheEvent(NamedTuple):
    cache: str
    status: str
    pc: int
    addr: int
    row: int


def format_log_entry(ev: CacheEvent) -> str:
    return (f"{ev.cache + ' ' + ev.status:<8} pc:{ev.pc:5d}"
            f"\taddr:{ev.addr:5d}\trow:{ev.row:4d}")


def format_cache_config(name: str, p: LevelParams) -> str:
    return (f"Cache {name} has size {p.size}, associativity {p.assoc}, "
            f"blocksize {p.blocksize}, rows {p.rows}")


# ---------------------------------------------------------------------------
#  Hierarchy
# ---------------------------------------------------------------------------

class CacheHierarchy:
    """L1 plus optional L2, driven once per load/store."""

    def __init__(self, config: CacheConfig, on_event: Optional[callable] = None):
        self.config = config
        self.l1 = CacheLevel("L1", config.l1)
        self.l2 = CacheLevel("L2", config.l2) if config.l2 is not None else None

        # Callbacks
        self.on_event = on_event            # called with (CacheEvent)
        self.on_diagnostic: Optional[callable] = None

    @property
    def levels(self) -> list[CacheLevel]:
        if self.l2 is None:
            return [self.l1]
        return [self.l1, self.l2]

    def level(self, number: int) -> Optional[CacheLevel]:
        """Select a level by number (1 or 2)."""
        if number == 1:
            return self.l1
        if number == 2 and self.l2 is not None:
            return self.l2
        msg = "Not a valid cache"
        if self.on_diagnostic:
            self.on_diagnostic(msg)
        else:
            print(msg)
        return None

    def _emit(self, level: CacheLevel, status: str, pc: int, addr: int):
        if self.on_event:
            row, _, _ = level.locate(addr)
            self.on_event(CacheEvent(level.name, status, pc, addr, row))

    def load(self, memory: list[int], addr: int, pc: int) -> int:
        """Service a load; returns the word read."""
        for level in self.levels:
            val = level.read(addr)
            if val is not None:
                self._emit(level, HIT, pc, addr)
                return val
            self._emit(level, MISS, pc, addr)

        # Missed everywhere: fill from memory, outermost level first
        val = memory[addr]
        for level in reversed(self.levels):
            level.fill(memory, addr)
        return val

    def store(self, memory: list[int], addr: int, pc: int):
        """Install the (already written) block at every level."""
        for level in self.levels:
            level.fill(memory, addr)
            self._emit(level, SW, pc, addr)
