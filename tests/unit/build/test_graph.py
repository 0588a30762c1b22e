"""Unit tests for the workspace package graph."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from buildline.build.graph import CycleError, PackageGraph, UnknownDependencyError
from buildline.domain.models import WorkspacePackage


def _packages(*specs: tuple[str, tuple[str, ...]]) -> list[WorkspacePackage]:
    return [WorkspacePackage(name=name, path=name, depends_on=deps) for name, deps in specs]


def test_topological_sort_orders_dependencies_first_with_name_tiebreak() -> None:
    graph = PackageGraph.from_packages(
        _packages(
            ("pgr-bin", ("pgr-db",)),
            ("pgr-db", ()),
            ("agc-sys", ()),
            ("pgr-py", ("pgr-db", "agc-sys")),
        )
    )

    assert graph.topological_sort() == ("agc-sys", "pgr-db", "pgr-bin", "pgr-py")


def test_cycle_is_reported_with_closed_path() -> None:
    graph = PackageGraph.from_packages(
        _packages(("a", ("c",)), ("b", ("a",)), ("c", ("b",)), ("d", ()))
    )

    with pytest.raises(CycleError) as excinfo:
        graph.topological_sort()

    assert excinfo.value.cycles == (("a", "b", "c", "a"),)
    assert "a -> b -> c -> a" in str(excinfo.value)


def test_self_dependency_is_a_cycle() -> None:
    graph = PackageGraph.from_packages(_packages(("solo", ("solo",))))

    assert graph.detect_cycles() == (("solo", "solo"),)


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(UnknownDependencyError, match="'ghost'"):
        PackageGraph.from_packages(_packages(("pgr-bin", ("ghost",))))


def test_transitive_dependents_and_runnable_wave() -> None:
    graph = PackageGraph.from_packages(
        _packages(("core", ()), ("mid", ("core",)), ("cli", ("mid",)), ("other", ()))
    )

    assert graph.dependents_of("core", transitive=True) == ("cli", "mid")
    assert graph.dependencies_of("cli", transitive=True) == ("core", "mid")
    assert graph.runnable(set()) == ("core", "other")
    assert graph.runnable({"core"}, exclude={"other"}) == ("mid",)
    assert graph.serialize()["edges"] == [["core", "mid"], ["mid", "cli"]]


@st.composite
def _acyclic_workspaces(draw: st.DrawFn) -> list[WorkspacePackage]:
    names = draw(
        st.lists(
            st.from_regex(r"[a-z][a-z0-9-]{0,8}", fullmatch=True),
            min_size=1,
            max_size=8,
            unique=True,
        )
    )
    packages: list[WorkspacePackage] = []
    for index, name in enumerate(names):
        deps = draw(st.lists(st.sampled_from(names[:index]), unique=True)) if index else []
        packages.append(WorkspacePackage(name=name, path=name, depends_on=tuple(deps)))
    return packages


@settings(max_examples=75, deadline=None)
@given(packages=_acyclic_workspaces(), data=st.data())
def test_order_respects_dependencies_and_ignores_declaration_order(
    packages: list[WorkspacePackage], data: st.DataObject
) -> None:
    order = PackageGraph.from_packages(packages).topological_sort()
    shuffled = data.draw(st.permutations(packages))

    position = {name: index for index, name in enumerate(order)}
    assert sorted(order) == sorted(package.name for package in packages)
    for package in packages:
        for dependency in package.depends_on:
            assert position[dependency] < position[package.name]
    assert PackageGraph.from_packages(shuffled).topological_sort() == order
