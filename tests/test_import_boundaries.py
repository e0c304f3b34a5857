from __future__ import annotations

import ast
from pathlib import Path

import pytest


def _imported_modules(path: Path) -> list[str]:
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    names: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            names.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            names.append(node.module or "")
    return names


@pytest.mark.parametrize("package", ["events", "providers", "git", "shared"])
def test_lower_layers_do_not_import_orchestration_or_cli(package: str) -> None:
    forbidden = ("relay_bot.orchestration", "relay_bot.notifications", "relay_bot.cli")
    for path in Path("relay_bot", package).rglob("*.py"):
        for name in _imported_modules(path):
            assert not name.startswith(forbidden), f"{path} imports {name}"


def test_only_cli_imports_typer() -> None:
    for path in Path("relay_bot").rglob("*.py"):
        if path.name == "cli.py":
            continue
        for name in _imported_modules(path):
            assert name.split(".")[0] != "typer", f"{path} imports typer"


def test_every_package_module_is_imported_by_the_package() -> None:
    paths = sorted(Path("relay_bot").rglob("*.py"))
    modules = {".".join(path.with_suffix("").parts) for path in paths}
    imported = {name for path in paths for name in _imported_modules(path)}
    unused = modules - imported - {"relay_bot.cli"}
    assert unused == set()
