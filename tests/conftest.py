from __future__ import annotations

import hashlib
import json
import tarfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

import pyapps

BAR_UUID = "7876af07-990d-54b4-ab0e-23690620f79a"


def write_project(root: Path, name: str, *, version: Optional[str] = "1.0.0",
                  apps: Optional[Dict[str, Dict[str, object]]] = None,
                  pkg_uuid: Optional[str] = None, dependencies: Optional[List[str]] = None,
                  src_layout: bool = False) -> Path:
    """Write a minimal installable package with a pyproject.toml and a runnable module."""
    root.mkdir(parents=True, exist_ok=True)
    lines = ["[project]", f'name = "{name}"']
    if version:
        lines.append(f'version = "{version}"')
    if dependencies:
        lines.append("dependencies = [" + ", ".join(json.dumps(d) for d in dependencies) + "]")
    lines.append("")
    lines.append("[tool.pyapps]")
    if pkg_uuid:
        lines.append(f'uuid = "{pkg_uuid}"')
    for app_name, body in (apps if apps is not None else {name: {}}).items():
        lines.append("")
        lines.append(f'[tool.pyapps.apps."{app_name}"]')
        for key, value in body.items():
            lines.append(f"{key} = {json.dumps(value)}")
    (root / "pyproject.toml").write_text("\n".join(lines) + "\n", encoding="utf-8")

    module_root = root / "src" if src_layout else root
    module = module_root / name.replace("-", "_")
    module.mkdir(parents=True, exist_ok=True)
    (module / "__init__.py").write_text(f'__version__ = "{version}"\n', encoding="utf-8")
    (module / "__main__.py").write_text("import sys\nprint(sys.argv[1:])\n", encoding="utf-8")
    return root


def make_archive(tree: Path, out: Path) -> str:
    """tar.gz ``tree`` under a single top-level directory; returns the sha256."""
    out.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(out, "w:gz") as tf:
        tf.add(tree, arcname=tree.name)
    return hashlib.sha256(out.read_bytes()).hexdigest()


class RegistryBuilder:
    """A registry laid out on disk the way pyapps reads it."""

    def __init__(self, root: Path, registry_id: str = "local"):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.config_path = root / "registry.json"
        self.config_path.write_text(json.dumps({
            "registry.id": registry_id,
            "registry.name": registry_id.title(),
            "registry.path.package": "/packages/{NAME}.json",
        }), encoding="utf-8")
        self.packages: Dict[str, Dict[str, object]] = {}

    def publish(self, name: str, version: str, *, yanked: bool = False, pkg_uuid: str = BAR_UUID,
                apps: Optional[Dict[str, Dict[str, object]]] = None,
                sha256: Optional[str] = None) -> str:
        tree = write_project(self.root / "work" / f"{name}-{version}", name, version=version, apps=apps)
        archive_rel = f"archives/{name}-{version}.tar.gz"
        digest = make_archive(tree, self.root / archive_rel)
        doc = self.packages.setdefault(name, {
            "package.name": name,
            "package.uuid": pkg_uuid,
            "package.versions": {},
        })
        doc["package.versions"][version] = {  # type: ignore[index]
            "url": archive_rel,
            "sha256": sha256 or digest,
            "yanked": yanked,
        }
        pkg_file = self.root / "packages" / f"{name}.json"
        pkg_file.parent.mkdir(parents=True, exist_ok=True)
        pkg_file.write_text(json.dumps(doc, indent=2), encoding="utf-8")
        return digest


@pytest.fixture
def paths(tmp_path: Path) -> pyapps.AppPaths:
    return pyapps.AppPaths.rooted(str(tmp_path / "home"))


@pytest.fixture
def registry(tmp_path: Path) -> RegistryBuilder:
    return RegistryBuilder(tmp_path / "registry")


@pytest.fixture
def manager(paths: pyapps.AppPaths, registry: RegistryBuilder) -> pyapps.PyAppsManager:
    return pyapps.PyAppsManager(
        paths,
        registries={"local": str(registry.config_path)},
        flavor=pyapps.ShimFlavor.POSIX,
        python="/usr/bin/python3",
        install_deps=False,
    )
