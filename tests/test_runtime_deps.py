# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Checks that pyproject.toml and the imports in stowage/ agree.

The package sources are scanned statically, so a dependency that is only
reached on an error path still counts.  Declared distributions are mapped
to the top-level modules they install through ``importlib.metadata``.
"""

import ast
import re
import sys
import tomllib
from collections import defaultdict
from importlib.metadata import packages_distributions, requires
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).parent.parent
PACKAGE_DIR = PROJECT_ROOT / "stowage"

_STDLIB = sys.stdlib_module_names | {"_thread", "_io"}


def _normalize(name: str) -> str:
    return re.sub(r"[-_.]+", "-", name).lower()


def _requirement_name(requirement: str) -> str:
    return _normalize(re.split(r"[<>=!~;\[\s]", requirement)[0].strip())


def _load_project() -> dict:
    with open(PROJECT_ROOT / "pyproject.toml", "rb") as f:
        return tomllib.load(f)["project"]


def _third_party_imports() -> set[str]:
    """Top-level module names imported anywhere in stowage/."""
    names: set[str] = set()
    for path in PACKAGE_DIR.rglob("*.py"):
        tree = ast.parse(path.read_text(), filename=str(path))
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                names.update(a.name.split(".")[0] for a in node.names)
            elif isinstance(node, ast.ImportFrom):
                if node.module and node.level == 0:
                    names.add(node.module.split(".")[0])
    return {n for n in names if n not in _STDLIB and n != "stowage"}


def _modules_by_distribution() -> dict[str, set[str]]:
    """Invert ``packages_distributions`` to distribution -> modules."""
    result: dict[str, set[str]] = defaultdict(set)
    for module, dists in packages_distributions().items():
        for dist in dists:
            result[_normalize(dist)].add(module)
    return result


def _runtime_closure(direct: set[str]) -> set[str]:
    """Declared distributions plus everything they require at runtime."""
    resolved: set[str] = set()
    queue = list(direct)
    while queue:
        dist = queue.pop()
        if dist in resolved:
            continue
        resolved.add(dist)
        for req in requires(dist) or []:
            if "extra ==" in req:
                continue
            name = _requirement_name(req)
            if name not in resolved:
                queue.append(name)
    return resolved


@pytest.fixture(scope="module")
def project() -> dict:
    return _load_project()


@pytest.fixture(scope="module")
def imports() -> set[str]:
    return _third_party_imports()


class TestRuntimeDependencies:
    """pyproject.toml [project] dependencies against stowage/ imports."""

    def test_imports_are_declared(
        self, project: dict, imports: set[str]
    ) -> None:
        direct = {_requirement_name(d) for d in project["dependencies"]}
        runtime = _runtime_closure(direct)
        import_to_dist = packages_distributions()
        missing = []
        for name in sorted(imports):
            dists = import_to_dist.get(name, [])
            if not dists:
                missing.append(f"{name} (no distribution found)")
            elif not any(_normalize(d) in runtime for d in dists):
                missing.append(f"{name} (from {', '.join(dists)})")
        assert not missing, (
            "stowage/ imports packages not covered by runtime "
            "dependencies:\n" + "\n".join(f"  - {m}" for m in missing)
        )

    def test_declared_dependencies_are_imported(
        self, project: dict, imports: set[str]
    ) -> None:
        modules = _modules_by_distribution()
        unused = [
            dep
            for dep in project["dependencies"]
            if not modules[_requirement_name(dep)] & imports
        ]
        assert not unused, (
            "declared runtime dependencies never imported by stowage/: "
            + ", ".join(unused)
        )

    def test_test_extra_stays_out_of_the_package(
        self, project: dict, imports: set[str]
    ) -> None:
        modules = _modules_by_distribution()
        test_only = {
            _requirement_name(d)
            for d in project["optional-dependencies"]["test"]
        }
        leaked = sorted(
            module
            for dist in test_only
            for module in modules[dist] & imports
        )
        assert leaked == []
