import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple


class TableDescriptor:
    """
    A physical table. Equality, hashing and ordering ignore case.
    """

    __slots__ = ("schema", "name")

    def __init__(self, schema: str, name: str):
        self.schema = schema
        self.name = name

    @classmethod
    def parse(cls, qualified: str, default_schema: str = "public") -> "TableDescriptor":
        if "." in qualified:
            s, t = qualified.split(".", 1)
            return cls(s, t)
        return cls(default_schema, qualified)

    @property
    def key(self) -> Tuple[str, str]:
        return self.schema.lower(), self.name.lower()

    @property
    def qualified(self) -> str:
        return f"{self.schema}.{self.name}"

    def __eq__(self, other):
        if not isinstance(other, TableDescriptor):
            return NotImplemented
        return self.key == other.key

    def __lt__(self, other: "TableDescriptor") -> bool:
        return self.key < other.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        return f"TableDescriptor({self.schema!r}, {self.name!r})"

    def __str__(self):
        return self.qualified


class ForeignKeyEdge:
    """child references parent through a foreign key."""

    __slots__ = ("child", "parent")

    def __init__(self, child: TableDescriptor, parent: TableDescriptor):
        self.child = child
        self.parent = parent

    def __eq__(self, other):
        if not isinstance(other, ForeignKeyEdge):
            return NotImplemented
        return (self.child, self.parent) == (other.child, other.parent)

    def __hash__(self):
        return hash((self.child, self.parent))

    def __repr__(self):
        return f"ForeignKeyEdge({self.child.qualified} -> {self.parent.qualified})"


def filter_configured_tables(tables: Iterable[TableDescriptor], database_policy) -> List[TableDescriptor]:
    """
    Keep only tables named in the database's table map, in input order.
    Configured names with no live table are ignored.
    """
    out: List[TableDescriptor] = []
    seen: Set[TableDescriptor] = set()
    for t in tables:
        if t in seen:
            continue
        seen.add(t)
        if database_policy.table_policy_for(t) is not None:
            out.append(t)

    matched = {t.name.lower() for t in out} | {t.qualified.lower() for t in out}
    for configured in database_policy.tables:
        if configured.lower() not in matched:
            logging.debug(f"[SKIP] Configured table '{configured}' not found in schema, ignoring")
    return out


class DependencyGraph:
    """
    Tables stored in a flat list in first-observed order; edges are index pairs.

    depends_on[i] holds the indices of the parent tables that table i
    references, referenced_by[j] the children that reference table j.
    """

    def __init__(self, tables: Optional[Iterable[TableDescriptor]] = None):
        self.tables: List[TableDescriptor] = []
        self._index: Dict[TableDescriptor, int] = {}
        self.depends_on: List[Set[int]] = []
        self.referenced_by: List[List[int]] = []
        for t in tables or []:
            self.add_table(t)

    def __len__(self):
        return len(self.tables)

    def __contains__(self, table: TableDescriptor) -> bool:
        return table in self._index

    def add_table(self, table: TableDescriptor) -> int:
        idx = self._index.get(table)
        if idx is None:
            idx = len(self.tables)
            self._index[table] = idx
            self.tables.append(table)
            self.depends_on.append(set())
            self.referenced_by.append([])
        return idx

    def add_edge(self, edge: ForeignKeyEdge) -> bool:
        """
        Register child -> parent. Returns True only when the edge is new and
        both endpoints are known tables.
        """
        child = self._index.get(edge.child)
        parent = self._index.get(edge.parent)
        if child is None or parent is None:
            return False
        if child == parent:
            logging.debug(f"[CYCLE] {edge.child.qualified} references itself, ignoring for ordering")
            return False
        if parent in self.depends_on[child]:
            return False
        self.depends_on[child].add(parent)
        self.referenced_by[parent].append(child)
        return True

    def weights(self) -> List[int]:
        """
        weight(p) = sum over children c of (1 + weight(c)): the number of
        distinct dependency paths ending at p. Equivalent to bumping a parent
        and everything it transitively depends on once per registered edge,
        but independent of registration order.

        A child that is still on the traversal stack closes a cycle: it adds 1
        and is not followed.
        """
        n = len(self.tables)
        weight: List[Optional[int]] = [None] * n
        on_stack = [False] * n
        cycles: List[List[int]] = []

        for root in range(n):
            if weight[root] is not None:
                continue
            # explicit stack of (node, iterator position) to avoid recursion limits
            stack: List[List[int]] = [[root, 0]]
            path: List[int] = [root]
            on_stack[root] = True
            acc: Dict[int, int] = {root: 0}
            while stack:
                frame = stack[-1]
                node, pos = frame
                children = self.referenced_by[node]
                if pos < len(children):
                    frame[1] += 1
                    child = children[pos]
                    if on_stack[child]:
                        acc[node] += 1
                        cycles.append(path[path.index(child):])
                    elif weight[child] is not None:
                        acc[node] += 1 + weight[child]
                    else:
                        on_stack[child] = True
                        acc[child] = 0
                        path.append(child)
                        stack.append([child, 0])
                    continue
                stack.pop()
                path.pop()
                on_stack[node] = False
                weight[node] = acc.pop(node)
                if stack:
                    acc[stack[-1][0]] += 1 + weight[node]

        for group in _merge_overlapping(cycles):
            names = ", ".join(self.tables[i].qualified for i in group)
            logging.warning(f"[CYCLE] Foreign key cycle among: {names}; deletion order is best-effort")
        return [w or 0 for w in weight]

    def deletion_order(self) -> List[TableDescriptor]:
        w = self.weights()
        order = sorted(range(len(self.tables)), key=lambda i: (w[i], i))
        return [self.tables[i] for i in order]


def _merge_overlapping(cycles: List[List[int]]) -> List[List[int]]:
    """Cycles sharing a table are reported together, as one group."""
    groups: List[Set[int]] = []
    for cycle in cycles:
        merged = set(cycle)
        rest = []
        for g in groups:
            if g & merged:
                merged |= g
            else:
                rest.append(g)
        rest.append(merged)
        groups = rest
    return [sorted(g) for g in groups]


def build_order(tables: Iterable[TableDescriptor], edges: Iterable[ForeignKeyEdge]) -> List[TableDescriptor]:
    """Children first, then the parents they reference."""
    graph = DependencyGraph(tables)
    added = sum(1 for e in edges if graph.add_edge(e))
    logging.info(f"[ORDER] {len(graph)} table(s), {added} in-scope foreign key(s)")
    return graph.deletion_order()
