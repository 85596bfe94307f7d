"""Exception hierarchy shared by the IR, the pass pipeline and the runtime.

Nothing in the core retries: every error below propagates to the caller of
`Graph` construction, `compile` or `CompiledPlan.execute`.
"""

from __future__ import annotations

from typing import Iterable, Sequence


class IRValidationError(ValueError):
    """Structural IR violation (bad arity, unknown node ID, illegal mutation)."""

    pass


class ShapeMismatch(IRValidationError):
    """Input shapes violate an operation's shape-inference rule.

    Attributes:
        node_ids: IDs of the nodes whose shapes conflict. For a node that is
            being created this is its input IDs; for an existing node it is
            the node itself followed by the offending input.
        shapes: The conflicting shapes, rendered as strings, in the same order.
    """

    def __init__(
        self,
        message: str,
        *,
        node_ids: Sequence[int] = (),
        shapes: Sequence[str] = (),
    ) -> None:
        self.node_ids = tuple(node_ids)
        self.shapes = tuple(shapes)
        details = []
        if self.node_ids:
            details.append("nodes=" + ", ".join(f"%{i}" for i in self.node_ids))
        if self.shapes:
            details.append("shapes=" + " vs ".join(self.shapes))
        if details:
            message = f"{message} ({'; '.join(details)})"
        super().__init__(message)


class CyclicDependency(IRValidationError):
    """An edge insertion or rewrite would make the dependency graph cyclic."""

    def __init__(self, message: str, *, node_ids: Iterable[int] = ()) -> None:
        self.node_ids = tuple(sorted(node_ids))
        if self.node_ids:
            message = f"{message} (nodes: {list(self.node_ids)})"
        super().__init__(message)


class UnresolvedSymbol(LookupError):
    """A concrete value was demanded but dimension variables had no binding."""

    def __init__(self, symbols: Iterable[str], message: str | None = None) -> None:
        self.symbols = tuple(sorted(set(symbols)))
        if message is None:
            message = "unbound dimension variable(s): " + ", ".join(self.symbols)
        super().__init__(message)

    def __str__(self) -> str:
        return str(self.args[0])


class DeferredAllocation(UnresolvedSymbol):
    """The memory plan still depends on symbols; sizes resolve at execution."""

    pass


class BackendFailure(RuntimeError):
    """A backend failed to compile or run a kernel.

    Attributes:
        backend: Name of the backend that reported the failure.
        node_id: Graph node whose kernel failed, when known.
    """

    def __init__(self, message: str, *, backend: str = "", node_id: int | None = None) -> None:
        self.backend = backend
        self.node_id = node_id
        prefix = f"[{backend}] " if backend else ""
        where = f" (node %{node_id})" if node_id is not None else ""
        super().__init__(f"{prefix}{message}{where}")


class ArenaOutOfMemoryError(MemoryError):
    """A resolved buffer arena does not fit the configured capacity."""

    pass
