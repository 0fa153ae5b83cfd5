"""Tests for dependency ordering."""

import itertools

import pytest

from conftest import E, T
from db_purger.policy import DatabasePolicy, TablePolicy
from db_purger.relations import (
    DependencyGraph,
    ForeignKeyEdge,
    TableDescriptor,
    build_order,
    filter_configured_tables,
)


def position(order):
    return {t: i for i, t in enumerate(order)}


def assert_children_first(order, edges):
    pos = position(order)
    for e in edges:
        if e.child in pos and e.parent in pos and e.child != e.parent:
            assert pos[e.child] < pos[e.parent], f"{e.child} must come before {e.parent}"


class TestTableDescriptor:

    def test_case_insensitive_equality_and_hash(self) -> None:
        assert TableDescriptor("Public", "Orders") == TableDescriptor("public", "orders")
        assert len({TableDescriptor("dbo", "X"), TableDescriptor("DBO", "x")}) == 1

    def test_ordering(self) -> None:
        assert sorted([T("b.a"), T("A.z"), T("a.B")]) == [T("a.b"), T("a.z"), T("b.a")]

    def test_parse_defaults_to_public(self) -> None:
        assert T("orders").qualified == "public.orders"


class TestBuildOrder:

    def test_chain(self) -> None:
        # lines -> invoices -> customers
        tables = [T("customers"), T("invoices"), T("lines")]
        edges = [E("invoices", "customers"), E("lines", "invoices")]
        assert build_order(tables, edges) == [T("lines"), T("invoices"), T("customers")]

    def test_unrelated_tables_keep_input_order(self) -> None:
        tables = [T("c"), T("a"), T("b")]
        assert build_order(tables, []) == tables

    def test_edge_registration_order_does_not_matter(self) -> None:
        tables = [T("a"), T("b"), T("c"), T("d")]
        edges = [E("b", "a"), E("c", "b"), E("d", "c")]
        expected = [T("d"), T("c"), T("b"), T("a")]
        for perm in itertools.permutations(edges):
            assert build_order(tables, perm) == expected

    def test_diamond(self) -> None:
        tables = [T("root"), T("left"), T("right"), T("leaf")]
        edges = [E("left", "root"), E("right", "root"), E("leaf", "left"), E("leaf", "right")]
        order = build_order(tables, edges)
        assert order[0] == T("leaf")
        assert order[-1] == T("root")
        assert_children_first(order, edges)

    def test_out_of_scope_edges_dropped(self) -> None:
        tables = [T("invoices"), T("lines")]
        edges = [E("lines", "invoices"), E("invoices", "customers"), E("audit", "lines")]
        assert build_order(tables, edges) == [T("lines"), T("invoices")]

    def test_duplicate_edges_are_noops(self) -> None:
        graph = DependencyGraph([T("a"), T("b")])
        assert graph.add_edge(E("b", "a")) is True
        assert graph.add_edge(E("B", "A")) is False
        assert graph.weights() == [1, 0]

    def test_self_reference_ignored(self) -> None:
        tables = [T("categories"), T("products")]
        edges = [E("categories", "categories"), E("products", "categories")]
        assert build_order(tables, edges) == [T("products"), T("categories")]

    @pytest.mark.parametrize("edges", [
        [E("a", "b"), E("b", "a")],
        [E("a", "b"), E("b", "c"), E("c", "a")],
        [E("a", "b"), E("b", "c"), E("c", "b"), E("d", "a")],
    ])
    def test_cycles_terminate_deterministically(self, edges) -> None:
        tables = [T("a"), T("b"), T("c"), T("d")]
        first = build_order(tables, edges)
        assert sorted(first) == sorted(tables)
        assert build_order(tables, edges) == first

    def test_overlapping_cycles_warn_once(self, caplog) -> None:
        tables = [T("a"), T("b"), T("c"), T("d"), T("e")]
        triangle = [E(x, y) for x, y in itertools.permutations(["a", "b", "c"], 2)]
        with caplog.at_level("WARNING"):
            build_order(tables, triangle + [E("d", "e"), E("e", "d")])
        warnings = [r.getMessage() for r in caplog.records if "[CYCLE]" in r.getMessage()]
        assert len(warnings) == 2
        assert "public.a, public.b, public.c" in warnings[0]
        assert "public.d, public.e" in warnings[1]

    def test_cycle_does_not_break_acyclic_part(self) -> None:
        tables = [T("a"), T("b"), T("child")]
        edges = [E("a", "b"), E("b", "a"), E("child", "a")]
        order = build_order(tables, edges)
        assert order.index(T("child")) < order.index(T("a"))

    def test_duplicate_tables_collapse(self) -> None:
        assert build_order([T("a"), T("A"), T("b")], []) == [T("a"), T("b")]


class TestWeights:

    def test_parent_weight_exceeds_each_child(self) -> None:
        tables = [T(n) for n in "abcdef"]
        edges = [
            E("b", "a"), E("c", "a"), E("d", "b"), E("d", "c"),
            E("e", "d"), E("f", "a"), E("e", "c"),
        ]
        graph = DependencyGraph(tables)
        for e in edges:
            graph.add_edge(e)
        w = dict(zip(graph.tables, graph.weights()))
        for e in edges:
            assert w[e.parent] >= 1 + w[e.child]
        assert_children_first(graph.deletion_order(), edges)

    def test_weight_counts_paths(self) -> None:
        graph = DependencyGraph([T("root"), T("left"), T("right"), T("leaf")])
        for e in [E("left", "root"), E("right", "root"), E("leaf", "left"), E("leaf", "right")]:
            graph.add_edge(e)
        assert graph.weights() == [4, 1, 1, 0]

    def test_long_chain_has_no_recursion_limit(self) -> None:
        tables = [T(f"t{i}") for i in range(3000)]
        edges = [ForeignKeyEdge(tables[i + 1], tables[i]) for i in range(len(tables) - 1)]
        order = build_order(tables, edges)
        assert order[0] == tables[-1]
        assert order[-1] == tables[0]


class TestFilterConfiguredTables:

    def test_only_configured_tables_kept(self) -> None:
        db = DatabasePolicy(tables={"invoices": TablePolicy(), "sales.orders": TablePolicy()})
        live = [T("public.invoices"), T("public.orders"), T("sales.orders"), T("public.users")]
        assert filter_configured_tables(live, db) == [T("public.invoices"), T("sales.orders")]

    def test_configured_but_missing_is_ignored(self) -> None:
        db = DatabasePolicy(tables={"dropped_table": TablePolicy(), "invoices": TablePolicy()})
        assert filter_configured_tables([T("invoices")], db) == [T("invoices")]
