from __future__ import annotations

from pathlib import Path
import tomllib


def _load_pyproject() -> dict:
    pyproject_path = Path(__file__).resolve().parents[1] / "pyproject.toml"
    return tomllib.loads(pyproject_path.read_text(encoding="utf-8"))


def test_pyproject_declares_cli_script() -> None:
    scripts = _load_pyproject()["project"]["scripts"]
    assert scripts["kvasir-bench"] == "cli:main"


def test_pyproject_installs_every_source_module() -> None:
    data = _load_pyproject()
    src_dir = Path(__file__).resolve().parents[1] / "src"
    modules = sorted(path.stem for path in src_dir.glob("*.py"))
    assert sorted(data["tool"]["setuptools"]["py-modules"]) == modules
