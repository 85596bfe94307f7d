"""Buffer planning: liveness intervals and storage assignment.

Every scheduled node writes one Buffer Slot. Slots whose liveness intervals
do not overlap may share a physical storage region; the planner assigns
storages with a deterministic greedy interval coloring:

- slots are visited by interval start (schedule position);
- storages whose last slot ended strictly before that start are released;
- the released storage with the smallest provable waste is reused (best
  fit), otherwise a new storage is created.

Sizes are dimension expressions. When a size is symbolic, "provably large
enough" means the difference of the two canonical sizes is a non-negative
literal; otherwise the planner opens a new storage. Offsets and the arena
size are therefore expressions too and resolve once inputs bind the
variables (`MemoryPlan.resolve`).
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, Hashable, Mapping, TypeVar

from tensorplan.errors import ArenaOutOfMemoryError, DeferredAllocation, UnresolvedSymbol
from tensorplan.log import get_logger
from tensorplan.symbolic import Const, Expr, ExprLike

if TYPE_CHECKING:
    from tensorplan.ir import Graph

logger = get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class MemoryConfig:
    """Configuration for the buffer arena.

    Attributes:
        alignment: Byte alignment of every slot. Must be a power of 2.
        capacity_bytes: Optional upper bound for a resolved arena.
        layout_cache_size: Number of resolved layouts kept per plan, most
            recently used first.
    """

    alignment: int = 64
    capacity_bytes: int | None = None
    layout_cache_size: int = 64

    def __post_init__(self) -> None:
        if self.alignment <= 0 or (self.alignment & (self.alignment - 1)) != 0:
            raise ValueError(f"alignment must be a positive power of 2, got {self.alignment}")
        if self.capacity_bytes is not None and self.capacity_bytes <= 0:
            raise ValueError(f"capacity_bytes must be positive, got {self.capacity_bytes}")
        if self.layout_cache_size < 1:
            raise ValueError(f"layout_cache_size must be >= 1, got {self.layout_cache_size}")


def align_up(size: ExprLike, alignment: int) -> Expr:
    """Round a (possibly symbolic) byte size up to `alignment`."""
    size = Const(size) if isinstance(size, int) else size
    return (((size + (alignment - 1)) // alignment) * alignment).simplify()


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """Mapping that keeps only the `maxsize` most recently used entries.

    Example:
        >>> cache = LRUCache(2)
        >>> cache.put("a", 1); cache.put("b", 2); cache.get("a")
        1
        >>> cache.put("c", 3)
        >>> "b" in cache
        False
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self.maxsize = maxsize
        self._entries: OrderedDict[K, V] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: K) -> V | None:
        if key not in self._entries:
            return None
        self._entries.move_to_end(key)
        return self._entries[key]

    def put(self, key: K, value: V) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


# =============================================================================
# Slots and storages
# =============================================================================


@dataclass(frozen=True, slots=True)
class BufferSlot:
    """Output buffer of one node, live over [start, end] schedule positions."""

    node_id: int
    size: Expr
    start: int
    end: int

    def overlaps(self, other: BufferSlot) -> bool:
        return not (self.end < other.start or other.end < self.start)


@dataclass(slots=True)
class Storage:
    """A physical region of the arena shared by non-overlapping slots.

    `size` is the size of the first slot; later slots join only when that
    size provably covers them.
    """

    index: int
    size: Expr
    slots: list[int] = field(default_factory=list)
    last_end: int = -1


def provable_waste(capacity: Expr, need: Expr) -> int | None:
    """Bytes left over when `need` is placed in `capacity`, or None if
    `capacity >= need` cannot be shown for every binding."""
    diff = (capacity - need).simplify()
    if isinstance(diff, Const) and diff.value >= 0:
        return diff.value
    return None


@dataclass
class StoragePool:
    """Deterministic best-fit pool of storages.

    Storages are never shrunk; a released storage can be handed to a later
    slot that fits. Ties on waste go to the lowest storage index.

    Example:
        >>> pool = StoragePool()
        >>> a = pool.acquire(Const(4096), node_id=0, end=3)
        >>> pool.release_before(4)
        >>> pool.acquire(Const(1024), node_id=1, end=5) == a
        True
    """

    storages: list[Storage] = field(default_factory=list)
    _active: list[int] = field(default_factory=list, repr=False)
    _released: list[int] = field(default_factory=list, repr=False)
    reuses: int = 0
    peak_active: int = 0

    @property
    def live(self) -> int:
        return len(self._active)

    def release_before(self, position: int) -> None:
        """Release every active storage whose last slot ended before `position`."""
        still_active = []
        for index in self._active:
            if self.storages[index].last_end < position:
                self._released.append(index)
            else:
                still_active.append(index)
        self._active = still_active
        self._released.sort()

    def acquire(self, size: Expr, *, node_id: int, end: int) -> int:
        best: tuple[int, int] | None = None
        for index in self._released:
            waste = provable_waste(self.storages[index].size, size)
            if waste is not None and (best is None or waste < best[0]):
                best = (waste, index)

        if best is not None:
            index = best[1]
            self._released.remove(index)
            self.reuses += 1
        else:
            index = len(self.storages)
            self.storages.append(Storage(index=index, size=size))

        storage = self.storages[index]
        storage.slots.append(node_id)
        storage.last_end = end
        self._active.append(index)
        self.peak_active = max(self.peak_active, len(self._active))
        return index

    def format_state(self) -> str:
        lines = [
            "StoragePool:",
            f"  Storages: {len(self.storages)}",
            f"  Active:   {sorted(self._active)}",
            f"  Released: {self._released}",
            f"  Reuses:   {self.reuses}",
            f"  Peak live storages: {self.peak_active}",
        ]
        for storage in self.storages:
            slots = ", ".join(f"%{nid}" for nid in storage.slots)
            lines.append(f"    #{storage.index}: {storage.size} bytes [{slots}]")
        return "\n".join(lines)


# =============================================================================
# Plan and resolved layout
# =============================================================================


@dataclass(frozen=True, slots=True)
class MemoryLayout:
    """A memory plan with every size resolved to bytes.

    Attributes:
        offsets: node ID -> byte offset of its output in the arena.
        sizes: node ID -> aligned byte size of its output.
        total_bytes: Arena size.
        peak_live_bytes: Largest sum of simultaneously live slots.
        naive_bytes: Arena size without any reuse.
    """

    offsets: dict[int, int]
    sizes: dict[int, int]
    total_bytes: int
    peak_live_bytes: int
    naive_bytes: int


@dataclass
class MemoryPlan:
    schedule: list[int]
    slots: dict[int, BufferSlot]
    assignment: dict[int, int]
    storage_sizes: list[Expr]
    storage_offsets: list[Expr]
    total_bytes: Expr
    config: MemoryConfig = field(default_factory=MemoryConfig)
    _layouts: LRUCache[tuple, MemoryLayout] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._layouts = LRUCache(self.config.layout_cache_size)

    @property
    def free_symbols(self) -> frozenset[str]:
        names: set[str] = set()
        for size in self.storage_sizes:
            names |= size.free_symbols()
        return frozenset(names)

    @property
    def is_symbolic(self) -> bool:
        return bool(self.free_symbols)

    def offset_of(self, node_id: int) -> Expr:
        return self.storage_offsets[self.assignment[node_id]]

    def resolve(self, bindings: Mapping[str, int] | None = None) -> MemoryLayout:
        """Evaluate offsets and sizes for concrete dimension values.

        Layouts are cached per binding of the plan's free symbols; the
        cache keeps the `config.layout_cache_size` most recent bindings.

        Raises:
            UnresolvedSymbol: a variable the plan depends on is unbound.
            ArenaOutOfMemoryError: the arena exceeds `config.capacity_bytes`.
        """
        bindings = dict(bindings or {})
        names = sorted(self.free_symbols)
        missing = [n for n in names if n not in bindings]
        if missing:
            raise UnresolvedSymbol(missing, "memory plan needs bindings for: " + ", ".join(missing))
        key = tuple((n, int(bindings[n])) for n in names)
        layout = self._layouts.get(key)
        if layout is None:
            layout = self._resolve(dict(key))
            self._layouts.put(key, layout)
        return layout

    def concrete_layout(self) -> MemoryLayout:
        """Resolve without bindings; raises `DeferredAllocation` if the plan
        is still symbolic."""
        if self.is_symbolic:
            raise DeferredAllocation(
                self.free_symbols,
                f"arena size {self.total_bytes} depends on "
                + ", ".join(sorted(self.free_symbols))
                + "; allocation is deferred to execution",
            )
        return self.resolve({})

    def _resolve(self, bindings: dict[str, int]) -> MemoryLayout:
        storage_offsets = [off.evaluate(bindings) for off in self.storage_offsets]
        total = self.total_bytes.evaluate(bindings)
        offsets: dict[int, int] = {}
        sizes: dict[int, int] = {}
        for nid, slot in self.slots.items():
            offsets[nid] = storage_offsets[self.assignment[nid]]
            sizes[nid] = slot.size.evaluate(bindings)

        live_at = [0] * (len(self.schedule) + 1)
        for nid, slot in self.slots.items():
            for pos in range(slot.start, min(slot.end, len(self.schedule)) + 1):
                live_at[pos] += sizes[nid]
        layout = MemoryLayout(
            offsets=offsets,
            sizes=sizes,
            total_bytes=total,
            peak_live_bytes=max(live_at, default=0),
            naive_bytes=sum(sizes.values()),
        )
        capacity = self.config.capacity_bytes
        if capacity is not None and total > capacity:
            self._raise_oom(layout, bindings)
        return layout

    def _raise_oom(self, layout: MemoryLayout, bindings: Mapping[str, int]) -> None:
        lines = [
            f"buffer arena out of memory: plan needs {layout.total_bytes:,} bytes "
            f"but capacity is {self.config.capacity_bytes:,} bytes",
            "",
            f"Bindings:        {dict(bindings)}",
            f"Peak live bytes: {layout.peak_live_bytes:,}",
            f"Without reuse:   {layout.naive_bytes:,}",
            "",
            f"Largest slots ({min(len(layout.sizes), 5)} of {len(layout.sizes)}):",
        ]
        for nid, size in sorted(layout.sizes.items(), key=lambda item: -item[1])[:5]:
            slot = self.slots[nid]
            lines.append(
                f"  %{nid}: {size:,} bytes @0x{layout.offsets[nid]:04X} live [{slot.start}, {slot.end}]"
            )
        raise ArenaOutOfMemoryError("\n".join(lines))

    def check_no_overlap(self) -> None:
        """Assert that slots sharing a storage have disjoint liveness."""
        by_storage: dict[int, list[BufferSlot]] = {}
        for nid, index in self.assignment.items():
            by_storage.setdefault(index, []).append(self.slots[nid])
        for index, slots in by_storage.items():
            slots.sort(key=lambda s: s.start)
            for prev, cur in zip(slots, slots[1:]):
                if prev.overlaps(cur):
                    raise AssertionError(
                        f"storage #{index}: %{prev.node_id} [{prev.start}, {prev.end}] overlaps "
                        f"%{cur.node_id} [{cur.start}, {cur.end}]"
                    )

    def format_plan(self, *, indent: str = "  ") -> str:
        lines = [f"{indent}Arena size: {self.total_bytes} bytes ({len(self.storage_sizes)} storages)"]
        for pos, nid in enumerate(self.schedule):
            slot = self.slots[nid]
            index = self.assignment[nid]
            lines.append(
                f"{indent}[{pos:3d}] %{nid}: #{index} @ {self.storage_offsets[index]} "
                f"size {slot.size} live [{slot.start}, {slot.end}]"
            )
        return "\n".join(lines)


# =============================================================================
# Planner
# =============================================================================


@dataclass(slots=True)
class MemoryPlanner:
    """Compute the schedule, buffer slots and storage assignment of a graph."""

    config: MemoryConfig = field(default_factory=MemoryConfig)

    def run(self, graph: Graph) -> MemoryPlan:
        schedule = graph.toposort()
        position = {nid: i for i, nid in enumerate(schedule)}
        horizon = len(schedule)

        slots: dict[int, BufferSlot] = {}
        for nid in schedule:
            node = graph.node(nid)
            start = position[nid]
            end = max((position[u] for u in graph.users(nid)), default=start)
            if graph.is_output(nid):
                end = horizon
            slots[nid] = BufferSlot(
                node_id=nid,
                size=align_up(node.nbytes, self.config.alignment),
                start=start,
                end=end,
            )

        pool = StoragePool()
        assignment: dict[int, int] = {}
        for slot in sorted(slots.values(), key=lambda s: (s.start, s.node_id)):
            pool.release_before(slot.start)
            assignment[slot.node_id] = pool.acquire(slot.size, node_id=slot.node_id, end=slot.end)

        sizes = [storage.size for storage in pool.storages]
        offsets: list[Expr] = []
        running: Expr = Const(0)
        for size in sizes:
            offsets.append(running)
            running = (running + size).simplify()

        plan = MemoryPlan(
            schedule=schedule,
            slots=slots,
            assignment=assignment,
            storage_sizes=sizes,
            storage_offsets=offsets,
            total_bytes=running,
            config=self.config,
        )
        logger.debug(
            "memory plan for %r: %d slots -> %d storages (%d reused), arena %s bytes",
            graph.name, len(slots), len(sizes), pool.reuses, plan.total_bytes,
        )
        return plan
