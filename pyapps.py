#!/usr/bin/env python3

# -- PyApps ----------------------------------------------------- #
# pyapps.py on PyApps                                             #
# Made by DiamondGotCat, Licensed under MIT License               #
# Copyright (c) 2025 DiamondGotCat                                #
# ---------------------------------------------- DiamondGotCat -- #

from __future__ import annotations

import argparse
import hashlib
import json
import os
import re
import shlex
import shutil
import subprocess
import sys
import tarfile
import tempfile
import time
import tomllib
import urllib.error
import urllib.parse
import urllib.request
import uuid as uuidlib
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from dotenv import load_dotenv
from filelock import FileLock
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version
from rich.console import Console
from rich.markup import escape as _rich_escape

# ---- Constants ------------------------------------------------- #

USER_AGENT = "PyApps"
HTTP_TIMEOUT = 20  # seconds

PROJECT_FILE = "pyproject.toml"
MANIFEST_FORMAT = 1
DEPS_DIRNAME = ".pyapps-deps"
SHIM_MARKER = "pyapps-shim"

PATH_FENCE_START = "# >>> pyapps initialize >>>"
PATH_FENCE_END = "# <<< pyapps initialize <<<"

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.bz2", ".tar.xz", ".tar", ".zip")

_NAME_RE = re.compile(r"^([A-Z0-9]|[A-Z0-9][A-Z0-9._-]*[A-Z0-9])$", re.IGNORECASE)
_APP_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
_PLACEHOLDER_RE = re.compile(r"\{([A-Z_]+)\}")
_MARKER_RE = re.compile(SHIM_MARKER + r": package=(\S+) app=(\S+)")

# Verbose logging flag and helper
_VERBOSE: bool = False
def vlog(*msg: object) -> None:
    if _VERBOSE:
        print("[DEBUG]", *msg, file=sys.stderr)

# Pretty printing helpers
class Colors:
    """ ANSI Color Codes """
    GREEN = "\033[0;32m"
    BLUE = "\033[0;34m"
    CYAN = "\033[0;36m"
    YELLOW = "\033[1;33m"
    BOLD = "\033[1m"
    RESET = "\033[0m"

def _p_info(msg: str) -> None:
    print(f"{Colors.CYAN}(i){Colors.RESET} {msg}")

def _p_action(msg: str) -> None:
    print(f"{Colors.BLUE}(>){Colors.RESET} {msg}")

def _p_warn(msg: str) -> None:
    print(f"{Colors.YELLOW}(!){Colors.RESET} {msg}")

def _p_success(msg: str) -> None:
    print(f"{Colors.GREEN}{Colors.BOLD}(i) {msg}{Colors.RESET}")

_CONSOLE = Console() if sys.stdout.isatty() else None


# ---- Exceptions ------------------------------------------------ #

class PyAppsError(Exception):
    """Base error. ``stage`` names the install stage that failed, when known."""

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class InvalidPackageSpec(PyAppsError):
    pass


class PackageNotFound(PyAppsError):
    def __init__(self, identifier: str, constraint: Optional[str] = None, *,
                 detail: str = "", stage: Optional[str] = None):
        self.identifier = identifier
        self.constraint = constraint
        msg = f"Package not found: {identifier}"
        if constraint:
            msg += f" ({constraint})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg, stage=stage)


class AmbiguousPackage(PyAppsError):
    pass


class ProjectFileMissing(PyAppsError):
    pass


class ProjectFileInvalid(ProjectFileMissing):
    pass


class NoAppsDeclared(PyAppsError):
    pass


class IOFailure(PyAppsError):
    pass


class ManifestCorrupt(PyAppsError):
    pass


class IdentityConflict(PyAppsError):
    pass


@contextmanager
def _stage(name: str) -> Iterator[None]:
    vlog("stage:", name)
    try:
        yield
    except PyAppsError as e:
        if e.stage is None:
            e.stage = name
        raise
    except OSError as e:
        raise IOFailure(str(e), stage=name) from e


# ---- Platform helpers ----------------------------------------- #

def _norm_os() -> str:
    sp = sys.platform
    if sp.startswith("win"):
        return "windows"
    if sp.startswith("darwin"):
        return "darwin"
    return "linux"


class ShimFlavor(Enum):
    POSIX = "posix"
    WINDOWS = "windows"

    @classmethod
    def host(cls) -> "ShimFlavor":
        return cls.WINDOWS if _norm_os() == "windows" else cls.POSIX

    @property
    def suffix(self) -> str:
        return ".bat" if self is ShimFlavor.WINDOWS else ""

    @property
    def pathsep(self) -> str:
        return ";" if self is ShimFlavor.WINDOWS else ":"


# ---- Paths ---------------------------------------------------- #

@dataclass(frozen=True)
class AppPaths:
    app_env_root: str
    manifest_path: str
    bin_dir: str
    registries_path: str
    cache_dir: str

    @classmethod
    def rooted(cls, base: str) -> "AppPaths":
        """All locations below ``base``; ignores the environment."""
        return cls(
            app_env_root=os.path.join(base, "envs"),
            manifest_path=os.path.join(base, "AppManifest.json"),
            bin_dir=os.path.join(base, "bin"),
            registries_path=os.path.join(base, "registries.json"),
            cache_dir=os.path.join(base, "cache"),
        )

    @classmethod
    def from_env(cls) -> "AppPaths":
        base = os.environ.get("PYAPPS_DIR") or os.path.join(os.path.expanduser("~"), ".pyapps")
        paths = cls.rooted(base)
        return cls(
            app_env_root=os.environ.get("PYAPPS_ENVS_DIR") or paths.app_env_root,
            manifest_path=paths.manifest_path,
            bin_dir=os.environ.get("PYAPPS_BIN_DIR") or paths.bin_dir,
            registries_path=paths.registries_path,
            cache_dir=paths.cache_dir,
        )

    def env_dir(self, name: str) -> str:
        return os.path.join(self.app_env_root, name)


# ---- File helpers ---------------------------------------------- #

def _atomic_write(path: str, data: bytes, *, mode: Optional[int] = None) -> None:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)

    fd, tmp = tempfile.mkstemp(prefix=".pyapps-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def _is_within(path: str, root: str) -> bool:
    path = os.path.realpath(path)
    root = os.path.realpath(root)
    try:
        return os.path.commonpath([path, root]) == root and path != root
    except ValueError:  # different drives
        return False


def _tree_hash(root: str) -> str:
    h = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fn in sorted(filenames):
            p = os.path.join(dirpath, fn)
            rel = os.path.relpath(p, root).replace(os.sep, "/")
            h.update(rel.encode("utf-8") + b"\0")
            with open(p, "rb") as f:
                for chunk in iter(lambda: f.read(1 << 20), b""):
                    h.update(chunk)
            h.update(b"\0")
    return h.hexdigest()


# ---- Fetching -------------------------------------------------- #

def _is_remote(url: str) -> bool:
    return url.startswith(("http://", "https://"))


def _local_path(url: str) -> str:
    if url.startswith("file://"):
        return urllib.request.url2pathname(urllib.parse.urlparse(url).path)
    return url


def _join_url(base: str, ref: str) -> str:
    if "://" in ref or os.path.isabs(ref):
        return ref
    if "://" in base:
        return urllib.parse.urljoin(base.rstrip("/") + "/", ref)
    return os.path.join(base, ref)


def _url_dirname(url: str) -> str:
    if "://" in url:
        return url.rsplit("/", 1)[0]
    return os.path.dirname(os.path.abspath(url))


def _get_bytes(url: str, *, missing_ok: bool = False) -> Optional[bytes]:
    if not _is_remote(url):
        path = _local_path(url)
        vlog("READ:", path)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            if missing_ok:
                return None
            raise IOFailure(f"File not found: {path}")
        except OSError as e:
            raise IOFailure(f"Failed to read {path}: {e}") from e

    vlog("GET:", url)
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(req, timeout=HTTP_TIMEOUT) as resp:
            if resp.status != 200:
                raise IOFailure(f"HTTP {resp.status} for {url}")
            data = resp.read()
            vlog("http-status:", resp.status, "bytes=", len(data))
            return data
    except urllib.error.HTTPError as e:
        if missing_ok and e.code == 404:
            return None
        raise IOFailure(f"Failed to GET {url}: {e}") from e
    except urllib.error.URLError as e:
        raise IOFailure(f"Failed to GET {url}: {e}") from e


def _cache_key(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest() + ".json"


def _http_get_json(url: str, *, cache_dir: Optional[str], use_cache: bool = True,
                   missing_ok: bool = False) -> Optional[Dict[str, Any]]:
    cpath = os.path.join(cache_dir, _cache_key(url)) if cache_dir else None
    if use_cache and cpath and os.path.exists(cpath):
        with open(cpath, "r", encoding="utf-8") as f:
            try:
                obj = json.load(f)
                vlog("cache-hit:", cpath)
                return obj
            except json.JSONDecodeError:
                vlog("cache-invalid:", cpath)

    data = _get_bytes(url, missing_ok=missing_ok)
    if data is None:
        return None
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise IOFailure(f"Invalid JSON at {url}: {e}") from e
    if not isinstance(obj, dict):
        raise IOFailure(f"Expected a JSON object at {url}")
    if use_cache and cpath:
        try:
            _atomic_write(cpath, json.dumps(obj, ensure_ascii=False, indent=2).encode("utf-8"))
            vlog("cache-write:", cpath)
        except OSError as e:
            vlog("cache-write failed:", cpath, e)
    return obj


def _download(url: str, dest_path: str) -> str:
    """Copy ``url`` to ``dest_path`` and return the sha256 of the bytes."""
    os.makedirs(os.path.dirname(dest_path), exist_ok=True)
    h = hashlib.sha256()
    if not _is_remote(url):
        src = _local_path(url)
        vlog("copy:", src, "->", dest_path)
        with open(src, "rb") as fin, open(dest_path, "wb") as fout:
            for chunk in iter(lambda: fin.read(1024 * 64), b""):
                h.update(chunk)
                fout.write(chunk)
        return h.hexdigest()

    vlog("download:", url, "->", dest_path)
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(req, timeout=HTTP_TIMEOUT) as resp, open(dest_path, "wb") as f:
            if resp.status != 200:
                raise IOFailure(f"HTTP {resp.status} for {url}")
            while True:
                chunk = resp.read(1024 * 64)
                if not chunk:
                    break
                h.update(chunk)
                f.write(chunk)
    except urllib.error.URLError as e:
        raise IOFailure(f"Failed to download {url}: {e}") from e
    return h.hexdigest()


def _extract_archive(archive_path: str, dest: str) -> str:
    """Unpack into ``dest``; returns the package root (a lone top-level directory is stripped)."""
    os.makedirs(dest, exist_ok=True)
    if zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path) as zf:
            zf.extractall(dest)
    elif tarfile.is_tarfile(archive_path):
        with tarfile.open(archive_path, "r:*") as tf:
            tf.extractall(dest, filter="data")
    else:
        raise IOFailure(f"Unsupported archive format: {archive_path}")

    entries = os.listdir(dest)
    if len(entries) == 1 and os.path.isdir(os.path.join(dest, entries[0])):
        return os.path.join(dest, entries[0])
    return dest


# ---- Package specs --------------------------------------------- #

@dataclass
class PackageSpec:
    kind: str  # 'registry', 'archive', 'git' or 'path'
    name: Optional[str] = None
    constraint: Optional[str] = None
    url: Optional[str] = None
    rev: Optional[str] = None
    path: Optional[str] = None

    def describe(self) -> str:
        if self.kind == "registry":
            return f"{self.name}{' ' + self.constraint if self.constraint else ''}"
        if self.kind == "git":
            return f"git+{self.url}{'#' + self.rev if self.rev else ''}"
        if self.kind == "archive":
            return str(self.url)
        return str(self.path)


def _looks_like_path(text: str) -> bool:
    # bare names are registry names even when a same-named folder exists
    seps = {"/", os.sep} | ({os.altsep} if os.altsep else set())
    return os.path.isabs(text) or text.startswith((".", "~")) or any(s in text for s in seps)


def parse_package_spec(text: str) -> PackageSpec:
    """Parse ``name``, ``name@1.2``, ``name@>=1,<2``, ``git+URL#rev``, an archive URL or a local path."""
    text = text.strip()
    if not text:
        raise InvalidPackageSpec("Empty package spec")

    if text.startswith("git+"):
        url, _, rev = text[len("git+"):].partition("#")
        if not url:
            raise InvalidPackageSpec(f"Missing repository URL: {text}")
        return PackageSpec(kind="git", url=url, rev=rev.strip() or None)

    if "://" in text:
        if not urllib.parse.urlparse(text).path.lower().endswith(ARCHIVE_SUFFIXES):
            raise InvalidPackageSpec(f"Unsupported URL (expected an archive or git+ URL): {text}")
        return PackageSpec(kind="archive", url=text)

    if _looks_like_path(text):
        path = os.path.abspath(os.path.expanduser(text))
        if os.path.isdir(path):
            return PackageSpec(kind="path", path=path)
        if path.lower().endswith(ARCHIVE_SUFFIXES) and os.path.isfile(path):
            return PackageSpec(kind="archive", url=path)
        raise InvalidPackageSpec(f"No such directory or archive: {text}")

    name, sep, constraint = text.partition("@")
    name = name.strip()
    constraint = constraint.strip()
    if not _NAME_RE.match(name):
        raise InvalidPackageSpec(f"Invalid package name: {name!r}")
    if sep and not constraint:
        raise InvalidPackageSpec(f"Missing version after '@': {text}")
    if constraint and constraint[0] not in "<>=!~":
        constraint = f"=={constraint}"
    try:
        SpecifierSet(constraint)
    except InvalidSpecifier as e:
        raise InvalidPackageSpec(f"Invalid version constraint {constraint!r}: {e}") from e
    return PackageSpec(kind="registry", name=name, constraint=constraint or None)


# ---- Project descriptor ---------------------------------------- #

@dataclass(frozen=True)
class PackageIdentity:
    name: str
    uuid: uuidlib.UUID


@dataclass
class AppDeclaration:
    name: str
    command: Optional[str] = None
    options: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "command": self.command, "options": list(self.options)}

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "AppDeclaration":
        return cls(name=str(obj["name"]), command=obj.get("command"),
                   options=[str(o) for o in obj.get("options", [])])


@dataclass
class ProjectInfo:
    name: str
    uuid: uuidlib.UUID
    version: Optional[str]
    dependencies: List[str]
    apps: Dict[str, AppDeclaration]


def default_uuid(name: str) -> uuidlib.UUID:
    return uuidlib.uuid5(uuidlib.NAMESPACE_URL, f"pyapps:{canonicalize_name(name)}")


def _parse_uuid(value: Any, where: str) -> uuidlib.UUID:
    try:
        return uuidlib.UUID(str(value))
    except ValueError as e:
        raise ProjectFileInvalid(f"Invalid uuid {value!r} in {where}") from e


def _parse_apps(raw: Any, where: str) -> Dict[str, AppDeclaration]:
    entries: List[Tuple[str, Any]] = []
    if isinstance(raw, dict):
        entries = list(raw.items())
    elif isinstance(raw, list):
        for item in raw:
            if not isinstance(item, dict) or not item.get("name"):
                raise ProjectFileInvalid(f"Every [[tool.pyapps.apps]] entry needs a 'name' ({where})")
            entries.append((str(item["name"]), item))
    else:
        raise ProjectFileInvalid(f"tool.pyapps.apps must be a table or an array of tables ({where})")

    apps: Dict[str, AppDeclaration] = {}
    for app_name, body in entries:
        if not _APP_NAME_RE.match(app_name):
            raise ProjectFileInvalid(f"Invalid app name {app_name!r} ({where})")
        if not isinstance(body, dict):
            raise ProjectFileInvalid(f"App {app_name!r} must be a table ({where})")
        module = body.get("module")
        if module is not None and (not isinstance(module, str) or not module.strip()):
            raise ProjectFileInvalid(f"App {app_name!r}: 'module' must be a non-empty string ({where})")
        options = body.get("python-options", [])
        if isinstance(options, str):
            options = shlex.split(options)
        if not isinstance(options, list) or not all(isinstance(o, str) for o in options):
            raise ProjectFileInvalid(f"App {app_name!r}: 'python-options' must be a list of strings ({where})")
        # later declarations of the same name win
        apps[app_name] = AppDeclaration(name=app_name, command=module, options=list(options))
    return apps


def _table(parent: Dict[str, Any], key: str, where: str) -> Dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ProjectFileInvalid(f"'{key}' must be a table ({where})")
    return value


def read_project(root: str, *, require_apps: bool = True) -> ProjectInfo:
    project_file = os.path.join(root, PROJECT_FILE)
    if not os.path.isfile(project_file):
        raise ProjectFileMissing(f"Project file not found: {project_file}")
    try:
        with open(project_file, "rb") as f:
            doc = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ProjectFileInvalid(f"Invalid project file {project_file}: {e}") from e

    project = _table(doc, "project", project_file)
    tool = _table(_table(doc, "tool", project_file), "pyapps", project_file)
    name = project.get("name") or tool.get("name")
    if not name or not _NAME_RE.match(str(name)):
        raise ProjectFileInvalid(f"Missing or invalid project name in {project_file}")
    name = str(name)

    pkg_uuid = _parse_uuid(tool["uuid"], project_file) if "uuid" in tool else default_uuid(name)
    version = project.get("version")
    dependencies = project.get("dependencies", [])
    if not isinstance(dependencies, list) or not all(isinstance(d, str) for d in dependencies):
        raise ProjectFileInvalid(f"project.dependencies must be a list of strings ({project_file})")
    apps = _parse_apps(tool.get("apps", {}), project_file)
    if require_apps and not apps:
        raise NoAppsDeclared(f"No apps found in {PROJECT_FILE} ({project_file})")

    vlog("project:", {"name": name, "uuid": str(pkg_uuid), "version": version, "apps": sorted(apps)})
    return ProjectInfo(name=name, uuid=pkg_uuid, version=str(version) if version else None,
                       dependencies=dependencies, apps=apps)


# ---- Registries ------------------------------------------------ #

@dataclass
class RegistryConfig:
    registry_id: str
    name: str
    base_url: str
    path_package: str


@dataclass
class RegistryVersion:
    version: Version
    raw: str
    content_hash: Optional[str]
    url: str
    yanked: bool


class PyAppsRegistry:
    def __init__(self, registry_name: str, config_url: str, *, cache_dir: Optional[str] = None):
        self.registry_name = registry_name
        self.config_url = config_url
        self.cache_dir = cache_dir
        vlog("registry-init:", registry_name, "config:", config_url)
        cfg = _http_get_json(config_url, cache_dir=cache_dir, use_cache=True)
        try:
            self.config = RegistryConfig(
                registry_id=cfg["registry.id"],
                name=cfg.get("registry.name", registry_name),
                base_url=str(cfg.get("registry.url") or _url_dirname(config_url)).rstrip("/"),
                path_package=cfg["registry.path.package"],
            )
        except KeyError as e:
            raise IOFailure(f"Missing key in registry.json ({config_url}): {e}") from e

    def _package_url(self, name: str) -> str:
        return f"{self.config.base_url}{self.config.path_package}".format(NAME=canonicalize_name(name))

    def fetch_package_info(self, name: str) -> Optional[Dict[str, Any]]:
        """Package document, or None when this registry does not know ``name``."""
        return _http_get_json(self._package_url(name), cache_dir=self.cache_dir,
                              use_cache=False, missing_ok=True)

    def parse_versions(self, pkg_info: Dict[str, Any]) -> List[RegistryVersion]:
        out: List[RegistryVersion] = []
        for raw, meta in pkg_info.get("package.versions", {}).items():
            try:
                ver = Version(raw)
            except InvalidVersion:
                vlog("registry:", self.registry_name, "skipping invalid version", raw)
                continue
            if not isinstance(meta, dict) or "url" not in meta:
                raise IOFailure(f"Version {raw} of {pkg_info.get('package.name')} has no url "
                                f"(registry {self.registry_name})")
            out.append(RegistryVersion(
                version=ver,
                raw=raw,
                content_hash=meta.get("sha256"),
                url=_join_url(self.config.base_url, str(meta["url"])),
                yanked=bool(meta.get("yanked", False)),
            ))
        return out


@dataclass
class ResolvedVersion:
    kind: str
    source: str
    identity: Optional[PackageIdentity] = None
    version: Optional[str] = None
    content_hash: Optional[str] = None
    url: Optional[str] = None
    rev: Optional[str] = None
    path: Optional[str] = None


def resolve_version(registries: List[PyAppsRegistry], name: str,
                    constraint: Optional[str] = None) -> ResolvedVersion:
    """Pick the highest non-yanked version of ``name`` matching ``constraint`` across all registries.

    Yanked versions are never selected, not even by an exact pin.
    """
    spec_set = SpecifierSet(constraint or "")
    identity: Optional[PackageIdentity] = None
    identity_registry = ""
    candidates: List[Tuple[RegistryVersion, str]] = []
    yanked_matches: List[str] = []

    for reg in registries:
        info = reg.fetch_package_info(name)
        if info is None:
            vlog("resolve:", name, "unknown to", reg.registry_name)
            continue
        pkg_name = str(info.get("package.name") or name)
        if not _NAME_RE.match(pkg_name):
            raise IOFailure(f"Invalid package name {pkg_name!r} in registry {reg.registry_name}")
        try:
            pkg_uuid = uuidlib.UUID(str(info.get("package.uuid") or default_uuid(pkg_name)))
        except ValueError as e:
            raise IOFailure(f"Invalid uuid for {pkg_name} in registry {reg.registry_name}") from e
        if identity is None:
            identity = PackageIdentity(pkg_name, pkg_uuid)
            identity_registry = reg.registry_name
        elif identity.uuid != pkg_uuid:
            raise AmbiguousPackage(
                f"Package {name} has uuid {identity.uuid} in registry {identity_registry} "
                f"but {pkg_uuid} in registry {reg.registry_name}")

        for rv in reg.parse_versions(info):
            if rv.yanked:
                if constraint and spec_set.contains(rv.version, prereleases=True):
                    yanked_matches.append(rv.raw)
                continue
            candidates.append((rv, reg.registry_name))

    if identity is None:
        raise PackageNotFound(name, constraint, detail="not in any configured registry")

    eligible = set(spec_set.filter([rv.version for rv, _ in candidates]))
    best: Optional[Tuple[RegistryVersion, str]] = None
    for rv, reg_name in candidates:
        if rv.version not in eligible:
            continue
        if best is None or rv.version > best[0].version:
            best = (rv, reg_name)
        elif rv.version == best[0].version and rv.content_hash != best[0].content_hash:
            vlog("resolve:", f"{name} {rv.raw} differs between {best[1]} and {reg_name}; keeping {best[1]}")

    if best is None:
        detail = "no eligible version"
        if yanked_matches:
            detail = f"matching version(s) {', '.join(sorted(set(yanked_matches)))} yanked"
        raise PackageNotFound(name, constraint, detail=detail)

    rv, reg_name = best
    vlog("resolve:", {"name": identity.name, "version": rv.raw, "registry": reg_name})
    return ResolvedVersion(kind="registry", source=reg_name, identity=identity, version=rv.raw,
                           content_hash=rv.content_hash, url=rv.url)


# ---- Environment materializer --------------------------------- #

@dataclass
class Materialized:
    identity: PackageIdentity
    source_path: str
    version: Optional[str]
    revision: Optional[str]
    mode: str  # 'copy' or 'link'
    source: str


def search_path(env_path: str) -> List[str]:
    """Import roots of an environment: src-layout aware, plus installed dependencies."""
    src = os.path.join(env_path, "src")
    roots = [src if os.path.isdir(src) else env_path]
    deps = os.path.join(env_path, DEPS_DIRNAME)
    if os.path.isdir(deps):
        roots.append(deps)
    return roots


IdentityCheck = Callable[[PackageIdentity, Dict[str, AppDeclaration]], None]


class EnvironmentMaterializer:
    def __init__(self, paths: AppPaths, *, python: str, install_deps: bool = True):
        self.paths = paths
        self.python = python
        self.install_deps = install_deps

    def materialize(self, resolved: ResolvedVersion, *, link: bool = False,
                    check: Optional[IdentityCheck] = None) -> Materialized:
        if link:
            return self._link(resolved, check)

        root = self.paths.app_env_root
        os.makedirs(root, exist_ok=True)
        staging = tempfile.mkdtemp(prefix=".pyapps-stage-", dir=root)
        try:
            tree, revision = self._fetch(resolved, staging)
            info = read_project(tree, require_apps=False)
            identity = resolved.identity or PackageIdentity(info.name, info.uuid)
            if check is not None:
                check(identity, info.apps)
            if self.install_deps and info.dependencies:
                self._install_dependencies(tree, info.dependencies)
            dest = self.paths.env_dir(identity.name)
            self._swap_into_place(tree, dest)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        return Materialized(identity=identity, source_path=dest,
                            version=resolved.version or info.version,
                            revision=revision, mode="copy", source=resolved.source)

    def _link(self, resolved: ResolvedVersion, check: Optional[IdentityCheck]) -> Materialized:
        path = os.path.abspath(resolved.path or "")
        if not os.path.isdir(path):
            raise IOFailure(f"Not a directory: {path}")
        info = read_project(path, require_apps=False)
        identity = PackageIdentity(info.name, info.uuid)
        if check is not None:
            check(identity, info.apps)
        return Materialized(identity=identity, source_path=path, version=info.version,
                            revision=None, mode="link", source=path)

    def _fetch(self, resolved: ResolvedVersion, staging: str) -> Tuple[str, Optional[str]]:
        tree = os.path.join(staging, "tree")
        if resolved.kind in ("registry", "archive"):
            url = str(resolved.url)
            archive = os.path.join(staging, "download" + _archive_suffix(url))
            digest = _download(url, archive)
            if resolved.content_hash and digest != resolved.content_hash.lower():
                raise IOFailure(f"Checksum mismatch for {url}: expected {resolved.content_hash}, got {digest}")
            return _extract_archive(archive, tree), digest
        if resolved.kind == "git":
            return tree, self._git_checkout(str(resolved.url), resolved.rev, tree)
        if resolved.kind == "path":
            shutil.copytree(str(resolved.path), tree,
                            ignore=shutil.ignore_patterns(".git", "__pycache__", ".venv", DEPS_DIRNAME))
            return tree, _tree_hash(tree)
        raise PyAppsError(f"Unknown source kind: {resolved.kind}")

    @staticmethod
    def _git(*args: str, cwd: Optional[str] = None) -> str:
        vlog("git:", args)
        proc = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True)
        if proc.returncode != 0:
            raise IOFailure(f"git {args[0]} failed: {proc.stderr.strip() or proc.returncode}")
        return proc.stdout.strip()

    def _git_checkout(self, url: str, rev: Optional[str], tree: str) -> str:
        self._git("clone", "--quiet", url, tree)
        if rev:
            self._git("checkout", "--quiet", rev, cwd=tree)
        commit = self._git("rev-parse", "HEAD", cwd=tree)
        shutil.rmtree(os.path.join(tree, ".git"))
        return commit

    def _install_dependencies(self, tree: str, dependencies: List[str]) -> None:
        target = os.path.join(tree, DEPS_DIRNAME)
        cmd = [self.python, "-m", "pip", "install", "--quiet", "--disable-pip-version-check",
               "--target", target, *dependencies]
        vlog("deps:", cmd)
        proc = subprocess.run(cmd, capture_output=True, text=True)
        if proc.returncode != 0:
            raise IOFailure(f"Failed to install dependencies {dependencies}: "
                            f"{proc.stderr.strip() or proc.returncode}")

    def _swap_into_place(self, tree: str, dest: str) -> None:
        if not os.path.lexists(dest):
            os.replace(tree, dest)
            return
        # park the active env so a failed move can put it back
        parking = tempfile.mkdtemp(prefix=".pyapps-old-", dir=self.paths.app_env_root)
        parked = os.path.join(parking, "env")
        os.replace(dest, parked)
        try:
            os.replace(tree, dest)
        except OSError:
            os.replace(parked, dest)
            raise
        finally:
            shutil.rmtree(parking, ignore_errors=True)


def _archive_suffix(url: str) -> str:
    path = urllib.parse.urlparse(url).path.lower() if "://" in url else url.lower()
    for suffix in ARCHIVE_SUFFIXES:
        if path.endswith(suffix):
            return suffix
    return ".archive"


# ---- App manifest ---------------------------------------------- #

@dataclass
class InstalledPackageEntry:
    name: str
    uuid: str
    version: Optional[str]
    revision: Optional[str]
    source_path: str
    mode: str = "copy"
    source: Optional[str] = None
    installed_at: Optional[str] = None
    apps: Dict[str, AppDeclaration] = field(default_factory=dict)

    @property
    def identity(self) -> PackageIdentity:
        return PackageIdentity(self.name, uuidlib.UUID(self.uuid))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "uuid": self.uuid,
            "version": self.version,
            "revision": self.revision,
            "source_path": self.source_path,
            "mode": self.mode,
            "source": self.source,
            "installed_at": self.installed_at,
            "apps": {name: app.to_dict() for name, app in sorted(self.apps.items())},
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "InstalledPackageEntry":
        return cls(
            name=str(obj["name"]),
            uuid=str(uuidlib.UUID(str(obj["uuid"]))),
            version=obj.get("version"),
            revision=obj.get("revision"),
            source_path=str(obj["source_path"]),
            mode=str(obj.get("mode", "copy")),
            source=obj.get("source"),
            installed_at=obj.get("installed_at"),
            apps={name: AppDeclaration.from_dict(app) for name, app in obj.get("apps", {}).items()},
        )


PackageKey = Union[str, uuidlib.UUID, PackageIdentity, InstalledPackageEntry]


def _key(pkg: PackageKey) -> str:
    if isinstance(pkg, (PackageIdentity, InstalledPackageEntry)):
        return str(pkg.uuid)
    return str(uuidlib.UUID(str(pkg)))


@dataclass
class AppManifest:
    packages: Dict[str, InstalledPackageEntry] = field(default_factory=dict)

    def get(self, pkg: PackageKey) -> Optional[InstalledPackageEntry]:
        return self.packages.get(_key(pkg))

    def upsert(self, entry: InstalledPackageEntry) -> Optional[InstalledPackageEntry]:
        """Insert or replace by uuid; returns the replaced entry."""
        previous = self.packages.get(entry.uuid)
        self.packages[entry.uuid] = entry
        return previous

    def remove_package(self, pkg: PackageKey) -> Optional[InstalledPackageEntry]:
        return self.packages.pop(_key(pkg), None)

    def remove_app(self, pkg: PackageKey, app_name: str) -> bool:
        """Drop one app; returns True when that emptied the entry and removed the package."""
        entry = self.get(pkg)
        if entry is None or app_name not in entry.apps:
            return False
        del entry.apps[app_name]
        if not entry.apps:
            self.remove_package(entry)
            return True
        return False

    def find_by_name(self, name: str) -> Optional[InstalledPackageEntry]:
        wanted = canonicalize_name(name)
        for entry in self.packages.values():
            if canonicalize_name(entry.name) == wanted:
                return entry
        return None

    def find_app(self, app_name: str) -> Optional[InstalledPackageEntry]:
        for entry in self.packages.values():
            if app_name in entry.apps:
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "manifest.format": MANIFEST_FORMAT,
            "packages": {k: e.to_dict() for k, e in sorted(self.packages.items())},
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "AppManifest":
        packages: Dict[str, InstalledPackageEntry] = {}
        for raw in obj.get("packages", {}).values():
            entry = InstalledPackageEntry.from_dict(raw)
            packages[entry.uuid] = entry
        return cls(packages=packages)


class ManifestStore:
    def __init__(self, path: str):
        self.path = path
        self.lock_path = path + ".lock"

    def read(self) -> AppManifest:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                obj = json.load(f)
        except FileNotFoundError:
            return AppManifest()
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestCorrupt(f"Unreadable app manifest {self.path}: {e}") from e
        try:
            if not isinstance(obj, dict) or obj.get("manifest.format") != MANIFEST_FORMAT:
                raise ValueError(f"unsupported format {obj.get('manifest.format') if isinstance(obj, dict) else obj!r}")
            return AppManifest.from_dict(obj)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ManifestCorrupt(f"Malformed app manifest {self.path}: {e}") from e

    def write(self, manifest: AppManifest) -> None:
        data = json.dumps(manifest.to_dict(), ensure_ascii=False, indent=2) + "\n"
        _atomic_write(self.path, data.encode("utf-8"))
        vlog("manifest-write:", self.path, "packages=", len(manifest.packages))

    @contextmanager
    def transaction(self) -> Iterator[AppManifest]:
        """Read-modify-write under an exclusive lock; nothing is written if the body raises."""
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with FileLock(self.lock_path):
            manifest = self.read()
            yield manifest
            self.write(manifest)


# ---- Shims ----------------------------------------------------- #

_POSIX_SHIM = """#!/usr/bin/env bash
# {MARKER}: package={PACKAGE} app={APP}
python_executable={PYTHON}

if [ ! -x "$python_executable" ]; then
    echo "Warning: Python executable not found at $python_executable, falling back to 'python3'." >&2
    python_executable=python3
fi

# Arguments before the first bare -- go to python, the rest to the app.
python_args=()
app_args=()
sep_found=false
for arg in "$@"; do
    if [ "$sep_found" = false ] && [ "$arg" = "--" ]; then
        sep_found=true
        python_args=("${app_args[@]}")
        app_args=()
        continue
    fi
    app_args+=("$arg")
done

PYTHONPATH={SEARCH_PATH}
export PYTHONPATH
exec "$python_executable" {OPTIONS}"${python_args[@]}" -m {MODULE} "${app_args[@]}"
"""

_WINDOWS_SHIM = """@echo off
rem {MARKER}: package={PACKAGE} app={APP}
setlocal disabledelayedexpansion
set "python_executable={PYTHON}"

if exist "%python_executable%" goto have_python
echo Warning: Python executable not found at %python_executable%, falling back to 'python'. 1>&2
set "python_executable=python"
:have_python

rem Arguments before the first bare -- go to python, the rest to the app.
set "python_args="
set "app_args="
set "sep_found="

:arg_loop
if [%1]==[] goto end_arg_loop
if defined sep_found goto append_arg
if not "%~1"=="--" goto append_arg
set "sep_found=1"
set python_args=%app_args%
set "app_args="
shift
goto arg_loop
:append_arg
set app_args=%app_args% %1
shift
goto arg_loop
:end_arg_loop

set "PYTHONPATH={SEARCH_PATH}"
"%python_executable%" {OPTIONS}%python_args% -m {MODULE} %app_args%
exit /b %errorlevel%
"""


@dataclass
class ShimContext:
    package: str
    app: str
    python: str
    search_path: List[str]
    module: str
    options: List[str] = field(default_factory=list)


def _module_name(package: str) -> str:
    return package.replace("-", "_")


def _batch_escape(value: str) -> str:
    return value.replace("%", "%%")


def _batch_quote(value: str) -> str:
    value = _batch_escape(value)
    if not value or any(c in value for c in ' \t&|<>^()"'):
        return '"' + value.replace('"', '""') + '"'
    return value


def _render(template: str, values: Dict[str, str]) -> str:
    return _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template)


def render_shim(ctx: ShimContext, flavor: ShimFlavor) -> str:
    if flavor is ShimFlavor.WINDOWS:
        options = "".join(_batch_quote(o) + " " for o in ctx.options)
        return _render(_WINDOWS_SHIM, {
            "MARKER": SHIM_MARKER,
            "PACKAGE": ctx.package,
            "APP": ctx.app,
            "PYTHON": _batch_escape(ctx.python),
            "SEARCH_PATH": _batch_escape(flavor.pathsep.join(ctx.search_path)),
            "OPTIONS": options,
            "MODULE": _batch_quote(ctx.module),
        }).replace("\n", "\r\n")

    options = "".join(shlex.quote(o) + " " for o in ctx.options)
    return _render(_POSIX_SHIM, {
        "MARKER": SHIM_MARKER,
        "PACKAGE": ctx.package,
        "APP": ctx.app,
        "PYTHON": shlex.quote(ctx.python),
        "SEARCH_PATH": shlex.quote(flavor.pathsep.join(ctx.search_path)),
        "OPTIONS": options,
        "MODULE": shlex.quote(ctx.module),
    })


def shim_path(bin_dir: str, app_name: str, flavor: ShimFlavor) -> str:
    return os.path.join(bin_dir, app_name + flavor.suffix)


def generate_shim(bin_dir: str, package: str, app: AppDeclaration, python: str, env_path: str,
                  flavor: Optional[ShimFlavor] = None) -> str:
    flavor = flavor or ShimFlavor.host()
    ctx = ShimContext(
        package=package,
        app=app.name,
        python=python,
        search_path=search_path(env_path),
        module=app.command or _module_name(package),
        options=list(app.options),
    )
    filename = shim_path(bin_dir, app.name, flavor)
    mode = 0o755 if flavor is ShimFlavor.POSIX else None
    _atomic_write(filename, render_shim(ctx, flavor).encode("utf-8"), mode=mode)
    vlog("shim:", filename, {"module": ctx.module, "search_path": ctx.search_path})
    return filename


def remove_shim(bin_dir: str, app_name: str, flavor: ShimFlavor) -> bool:
    filename = shim_path(bin_dir, app_name, flavor)
    if not os.path.lexists(filename):
        return False
    os.remove(filename)
    vlog("shim-removed:", filename)
    return True


def list_shims(bin_dir: str, flavor: ShimFlavor) -> Dict[str, Tuple[str, str]]:
    """Shims written by pyapps in ``bin_dir``: app name -> (package name, path)."""
    found: Dict[str, Tuple[str, str]] = {}
    if not os.path.isdir(bin_dir):
        return found
    for fn in sorted(os.listdir(bin_dir)):
        path = os.path.join(bin_dir, fn)
        if not os.path.isfile(path) or (flavor.suffix and not fn.endswith(flavor.suffix)):
            continue
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            head = "".join(f.readline() for _ in range(3))
        m = _MARKER_RE.search(head)
        if m:
            found[m.group(2)] = (m.group(1), path)
    return found


# ---- PATH handling --------------------------------------------- #

def _shell_config_file(home_dir: str, shell: str, bin_path: str) -> Tuple[Optional[str], Optional[str]]:
    if "/zsh" in shell:
        return os.path.join(home_dir, ".zshrc"), f"path=('{bin_path}' $path)\nexport PATH"
    if "/bash" in shell:
        return os.path.join(home_dir, ".bashrc"), f'export PATH="$PATH:{bin_path}"'
    if "/fish" in shell:
        return os.path.join(home_dir, ".config", "fish", "config.fish"), f"set -gx PATH $PATH {bin_path}"
    if "/ksh" in shell:
        return os.path.join(home_dir, ".kshrc"), f'export PATH="$PATH:{bin_path}"'
    if "/tcsh" in shell or "/csh" in shell:
        return os.path.join(home_dir, ".tcshrc"), f"setenv PATH $PATH:{bin_path}"
    return None, None


def _modify_unix_path(bin_path: str, *, shell: str, home_dir: str) -> bool:
    shell_config_file, path_command = _shell_config_file(home_dir, shell, bin_path)
    if shell_config_file is None:
        _p_warn(f"Failed to insert {bin_path} to PATH: failed to detect shell")
        return False
    if not os.path.isfile(shell_config_file):
        _p_warn(f"Failed to insert {bin_path} to PATH: {shell_config_file!r} does not exist.")
        return False

    with open(shell_config_file, "r", encoding="utf-8") as f:
        contents = f.read()
    if PATH_FENCE_START in contents and PATH_FENCE_END in contents:
        vlog("path: fence already present in", shell_config_file)
        return False

    with open(shell_config_file, "a", encoding="utf-8") as f:
        f.write(f"\n{PATH_FENCE_START}\n\n")
        f.write("# !! Contents within this block are managed by pyapps !!\n\n")
        f.write(f"{path_command}\n\n")
        f.write(f"{PATH_FENCE_END}\n\n")
    vlog("path: added", bin_path, "to", shell_config_file)
    return True


def _modify_windows_path(bin_path: str) -> bool:
    current_path = os.environ.get("PATH", "")
    if bin_path in current_path.split(";"):
        return False
    new_path = f"{current_path};{bin_path}" if current_path else bin_path
    subprocess.run(["setx", "PATH", new_path], check=True, capture_output=True)
    return True


# ---- Manager --------------------------------------------------- #

def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class PyAppsManager:
    def __init__(self, paths: Optional[AppPaths] = None, *,
                 registries: Optional[Dict[str, str]] = None,
                 flavor: Optional[ShimFlavor] = None,
                 python: Optional[str] = None,
                 install_deps: bool = True):
        self.paths = paths or AppPaths.from_env()
        self.flavor = flavor or ShimFlavor.host()
        self.python = python or os.environ.get("PYAPPS_PYTHON") or sys.executable
        self.store = ManifestStore(self.paths.manifest_path)
        self.materializer = EnvironmentMaterializer(self.paths, python=self.python,
                                                    install_deps=install_deps)
        self.registries_map = dict(registries) if registries is not None else self._load_registries()
        self._registry_cache: Dict[str, PyAppsRegistry] = {}

    # ---- Registries ----
    def _load_registries(self) -> Dict[str, str]:
        try:
            with open(self.paths.registries_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise PyAppsError(f"Invalid {self.paths.registries_path}: {e}") from e
        if not isinstance(data, dict):
            raise PyAppsError("registries.json must be a JSON object mapping name -> registry.json URL")
        return {str(k): str(v) for k, v in data.items()}

    def save_registries(self) -> None:
        data = json.dumps(self.registries_map, ensure_ascii=False, indent=2) + "\n"
        _atomic_write(self.paths.registries_path, data.encode("utf-8"))

    def list_registries(self) -> Dict[str, str]:
        return dict(self.registries_map)

    def add_registry(self, name: str, registry_json_url: str) -> None:
        self.registries_map[name] = registry_json_url
        self.save_registries()
        self._registry_cache.pop(name, None)

    def remove_registry(self, name: str) -> None:
        if name not in self.registries_map:
            raise PyAppsError(f"Unknown registry: {name}")
        self.registries_map.pop(name)
        self.save_registries()
        self._registry_cache.pop(name, None)

    def refresh(self) -> None:
        if os.path.isdir(self.paths.cache_dir):
            vlog("cache-clear:", self.paths.cache_dir)
            shutil.rmtree(self.paths.cache_dir)
        self._registry_cache.clear()

    def _get_registry(self, name: str) -> PyAppsRegistry:
        if name not in self._registry_cache:
            url = self.registries_map.get(name)
            if not url:
                raise PyAppsError(f"Unknown registry: {name}")
            self._registry_cache[name] = PyAppsRegistry(name, url, cache_dir=self.paths.cache_dir)
        return self._registry_cache[name]

    # ---- Resolution ----
    def resolve(self, spec: Union[str, PackageSpec]) -> ResolvedVersion:
        if isinstance(spec, str):
            spec = parse_package_spec(spec)
        if spec.kind != "registry":
            return ResolvedVersion(kind=spec.kind, source=spec.describe(), url=spec.url,
                                   rev=spec.rev, path=spec.path)
        if not self.registries_map:
            raise PackageNotFound(str(spec.name), spec.constraint, detail="no registries configured")
        registries = [self._get_registry(name) for name in self.registries_map]
        return resolve_version(registries, str(spec.name), spec.constraint)

    # ---- Install ----
    def add(self, spec: Union[str, PackageSpec]) -> InstalledPackageEntry:
        if isinstance(spec, str):
            spec = parse_package_spec(spec)
        return self._install(spec, link=False)

    def develop(self, spec: Union[str, PackageSpec]) -> InstalledPackageEntry:
        if isinstance(spec, str):
            spec = parse_package_spec(spec)
        if spec.kind != "path":
            raise InvalidPackageSpec(f"develop needs a local checkout directory, got {spec.describe()}")
        return self._install(spec, link=True)

    @staticmethod
    def _check_identity(manifest: AppManifest, identity: PackageIdentity,
                        apps: Dict[str, AppDeclaration]) -> None:
        for other in manifest.packages.values():
            if other.uuid == str(identity.uuid):
                continue
            if canonicalize_name(other.name) == canonicalize_name(identity.name):
                raise IdentityConflict(
                    f"A different package named {other.name} ({other.uuid}) is installed; remove it first")
            clash = sorted(set(other.apps) & set(apps))
            if clash:
                raise IdentityConflict(f"App(s) {', '.join(clash)} already provided by {other.name}")

    def _install(self, spec: PackageSpec, *, link: bool) -> InstalledPackageEntry:
        _p_action(f"{'Developing' if link else 'Adding'} {spec.describe()}")

        with _stage("resolve"):
            resolved = self.resolve(spec)
            if resolved.identity is not None:
                _p_info(f"Resolved {resolved.identity.name}@{resolved.version} from {resolved.source}")

        with _stage("materialize"):
            current = self.store.read()
            mat = self.materializer.materialize(
                resolved, link=link,
                check=lambda identity, apps: self._check_identity(current, identity, apps))

        try:
            with _stage("read-apps"):
                project = read_project(mat.source_path)
        except PyAppsError:
            # a fresh copy that never made it into the manifest is not kept
            if mat.mode == "copy" and current.get(mat.identity.uuid) is None:
                shutil.rmtree(mat.source_path, ignore_errors=True)
            raise

        entry = InstalledPackageEntry(
            name=mat.identity.name,
            uuid=str(mat.identity.uuid),
            version=mat.version,
            revision=mat.revision,
            source_path=mat.source_path,
            mode=mat.mode,
            source=mat.source,
            installed_at=_now(),
            apps=project.apps,
        )

        with _stage("manifest"):
            with self.store.transaction() as manifest:
                self._check_identity(manifest, mat.identity, entry.apps)
                previous = manifest.upsert(entry)
            if previous is not None:
                self._retire(previous, entry)

        with _stage("shims"):
            os.makedirs(self.paths.bin_dir, exist_ok=True)
            for app in entry.apps.values():
                generate_shim(self.paths.bin_dir, entry.name, app, self.python,
                              entry.source_path, self.flavor)

        _p_success(f"Installed {entry.name}"
                   f"{'@' + entry.version if entry.version else ''}: {', '.join(sorted(entry.apps))}")
        return entry

    def _retire(self, previous: InstalledPackageEntry, entry: InstalledPackageEntry) -> None:
        """Clean up what the replaced entry owned and the new one does not."""
        for app_name in sorted(set(previous.apps) - set(entry.apps)):
            remove_shim(self.paths.bin_dir, app_name, self.flavor)
        moved = os.path.normcase(os.path.abspath(previous.source_path)) != \
            os.path.normcase(os.path.abspath(entry.source_path))
        if previous.mode == "copy" and moved:
            self._remove_env(previous)

    def _remove_env(self, entry: InstalledPackageEntry) -> None:
        if entry.mode != "copy":
            return
        if not _is_within(entry.source_path, self.paths.app_env_root):
            _p_warn(f"Not removing {entry.source_path}: outside {self.paths.app_env_root}")
            return
        if os.path.isdir(entry.source_path):
            shutil.rmtree(entry.source_path)
            vlog("env-removed:", entry.source_path)

    # ---- Remove ----
    def rm(self, name: str) -> List[str]:
        """Remove a package by package name, or a single app by app name. Returns removed apps."""
        with _stage("remove"):
            with self.store.transaction() as manifest:
                entry = manifest.find_by_name(name)
                if entry is not None:
                    apps = sorted(entry.apps)
                    manifest.remove_package(entry)
                    cascaded = True
                else:
                    entry = manifest.find_app(name)
                    if entry is None:
                        raise PackageNotFound(name, detail="no installed package or app with that name")
                    apps = [name]
                    cascaded = manifest.remove_app(entry, name)

                for app_name in apps:
                    remove_shim(self.paths.bin_dir, app_name, self.flavor)
                if cascaded:
                    self._remove_env(entry)

        if cascaded:
            _p_success(f"Removed {entry.name} ({', '.join(apps)})")
        else:
            _p_success(f"Removed app {name} from {entry.name}")
        return apps

    # ---- Status ----
    def status(self) -> List[InstalledPackageEntry]:
        manifest = self.store.read()
        return sorted(manifest.packages.values(), key=lambda e: e.name.lower())

    def orphaned_shims(self) -> List[str]:
        owned = {(e.name, app) for e in self.store.read().packages.values() for app in e.apps}
        shims = list_shims(self.paths.bin_dir, self.flavor)
        return sorted(app for app, (pkg, _path) in shims.items() if (pkg, app) not in owned)

    def gc(self) -> List[str]:
        with self.store.transaction():
            orphans = self.orphaned_shims()
            for app_name in orphans:
                remove_shim(self.paths.bin_dir, app_name, self.flavor)
        return orphans

    # ---- PATH ----
    def add_bindir_to_path(self, *, shell: Optional[str] = None, home: Optional[str] = None) -> bool:
        if self.flavor is ShimFlavor.WINDOWS:
            return _modify_windows_path(self.paths.bin_dir)
        return _modify_unix_path(
            self.paths.bin_dir,
            shell=shell if shell is not None else os.environ.get("SHELL", ""),
            home_dir=home or os.path.expanduser("~"),
        )


# ---- CLI ------------------------------------------------------- #

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pyapps",
        description="PyApps - install Python packages as isolated command-line apps",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    sub = p.add_subparsers(dest="cmd")

    sp_add = sub.add_parser("add", help="Install packages and generate their app shims")
    sp_add.add_argument("packages", nargs="+",
                        help="NAME, NAME@VERSION, NAME@SPECIFIER, git+URL#REV, archive URL or local path")

    sp_dev = sub.add_parser("develop", help="Install apps from a local checkout without copying it")
    sp_dev.add_argument("paths", nargs="+", help="Local checkout directory")

    sp_rm = sub.add_parser("rm", help="Remove installed packages or single apps")
    sp_rm.add_argument("names", nargs="+", help="Package name or app name")

    sub.add_parser("status", help="Show installed packages and their apps")
    sub.add_parser("gc", help="Delete shims whose package is no longer installed")
    sub.add_parser("path", help="Add the shim directory to PATH in your shell startup file")

    sp_reg = sub.add_parser("registries", help="Manage registries.json")
    reg_sub = sp_reg.add_subparsers(dest="reg_cmd", required=True)
    reg_sub.add_parser("list", help="List configured registries")
    rs_add = reg_sub.add_parser("add", help="Add a registry")
    rs_add.add_argument("name")
    rs_add.add_argument("url", help="URL or path of registry.json")
    rs_rm = reg_sub.add_parser("remove", help="Remove a registry")
    rs_rm.add_argument("name")

    sub.add_parser("refresh", help="Clear cached registry documents")
    return p


def _cmd_add(mgr: PyAppsManager, args: argparse.Namespace) -> int:
    for spec in args.packages:
        mgr.add(spec)
    return 0


def _cmd_develop(mgr: PyAppsManager, args: argparse.Namespace) -> int:
    for path in args.paths:
        mgr.develop(path)
    return 0


def _cmd_rm(mgr: PyAppsManager, args: argparse.Namespace) -> int:
    for name in args.names:
        mgr.rm(name)
    return 0


def _print_entry(entry: InstalledPackageEntry) -> None:
    ver = entry.version or (entry.revision[:12] if entry.revision else "?")
    where = f"{entry.mode}: {entry.source_path}"
    if _CONSOLE:
        _CONSOLE.print(f"[bold cyan]{_rich_escape(entry.name)}[/] [white]@{_rich_escape(ver)}[/] "
                       f"[dim]{entry.uuid} ({_rich_escape(where)})[/]")
        for app in sorted(entry.apps.values(), key=lambda a: a.name):
            target = app.command or _module_name(entry.name)
            _CONSOLE.print(f"    [green]{_rich_escape(app.name)}[/] [dim]-> {_rich_escape(target)}[/]")
    else:
        print(f"{entry.name}@{ver} {entry.uuid} ({where})")
        for app in sorted(entry.apps.values(), key=lambda a: a.name):
            print(f"    {app.name} -> {app.command or _module_name(entry.name)}")


def _cmd_status(mgr: PyAppsManager, _args: argparse.Namespace) -> int:
    entries = mgr.status()
    if not entries:
        print("(no apps installed)")
    for entry in entries:
        _print_entry(entry)
    orphans = mgr.orphaned_shims()
    if orphans:
        _p_warn(f"Orphaned shims (run 'pyapps gc'): {', '.join(orphans)}")
    return 0


def _cmd_gc(mgr: PyAppsManager, _args: argparse.Namespace) -> int:
    removed = mgr.gc()
    print("\n".join(f"removed {name}" for name in removed) if removed else "(no orphaned shims)")
    return 0


def _cmd_path(mgr: PyAppsManager, _args: argparse.Namespace) -> int:
    if mgr.add_bindir_to_path():
        _p_success(f"Added {mgr.paths.bin_dir} to PATH. Restart your shell to pick it up.")
    else:
        _p_info(f"PATH not modified for {mgr.paths.bin_dir}.")
    return 0


def _cmd_registries(mgr: PyAppsManager, args: argparse.Namespace) -> int:
    if args.reg_cmd == "list":
        regs = mgr.list_registries()
        if not regs:
            print("(no registries configured)")
        for name, url in regs.items():
            print(f"{name}: {url}")
        return 0
    if args.reg_cmd == "add":
        mgr.add_registry(args.name, args.url)
        print(f"Added registry '{args.name}' -> {args.url}")
        return 0
    if args.reg_cmd == "remove":
        mgr.remove_registry(args.name)
        print(f"Removed registry '{args.name}'")
        return 0
    raise PyAppsError("Unknown registries subcommand")


def _cmd_refresh(mgr: PyAppsManager, _args: argparse.Namespace) -> int:
    mgr.refresh()
    _p_success("registry cache cleared.")
    return 0


# ---- main ------------------------------------------------------ #

def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    load_dotenv()

    parser = _build_parser()
    args = parser.parse_args(argv)
    global _VERBOSE
    _VERBOSE = bool(args.verbose) or (os.environ.get("PYAPPS_DEBUG") == "1")
    vlog("argv:", argv)

    if not args.cmd:
        parser.print_help()
        return 0

    try:
        mgr = PyAppsManager(install_deps=os.environ.get("PYAPPS_INSTALL_DEPS", "1") != "0")

        if args.cmd == "add":
            return _cmd_add(mgr, args)
        elif args.cmd == "develop":
            return _cmd_develop(mgr, args)
        elif args.cmd == "rm":
            return _cmd_rm(mgr, args)
        elif args.cmd == "status":
            return _cmd_status(mgr, args)
        elif args.cmd == "gc":
            return _cmd_gc(mgr, args)
        elif args.cmd == "path":
            return _cmd_path(mgr, args)
        elif args.cmd == "registries":
            return _cmd_registries(mgr, args)
        elif args.cmd == "refresh":
            return _cmd_refresh(mgr, args)
        else:
            parser.print_help()
            return 2

    except PyAppsError as e:
        where = f"({e.stage}) " if e.stage else ""
        print(f"[PYAPPS ERROR] {where}{e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
