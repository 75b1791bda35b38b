"""
Tests for package spec parsing and pyproject.toml app declarations.
"""

from __future__ import annotations

import uuid

import pytest

import pyapps
from conftest import write_project


class TestParsePackageSpec:

    def test_bare_name_tracks_latest(self):
        spec = pyapps.parse_package_spec("bar")
        assert (spec.kind, spec.name, spec.constraint) == ("registry", "bar", None)

    def test_plain_version_is_exact(self):
        assert pyapps.parse_package_spec("bar@1.2.0").constraint == "==1.2.0"

    def test_specifier_set(self):
        assert pyapps.parse_package_spec("bar@>=1.0,<2").constraint == ">=1.0,<2"

    def test_git_with_rev(self):
        spec = pyapps.parse_package_spec("git+https://example.com/bar.git#v1.0")
        assert (spec.kind, spec.url, spec.rev) == ("git", "https://example.com/bar.git", "v1.0")
        assert spec.describe() == "git+https://example.com/bar.git#v1.0"

    def test_git_without_rev(self):
        assert pyapps.parse_package_spec("git+https://example.com/bar.git").rev is None

    def test_archive_url(self):
        spec = pyapps.parse_package_spec("https://example.com/dl/bar-1.0.tar.gz")
        assert spec.kind == "archive"

    def test_non_archive_url_rejected(self):
        with pytest.raises(pyapps.InvalidPackageSpec):
            pyapps.parse_package_spec("https://example.com/bar")

    def test_local_directory(self, tmp_path):
        spec = pyapps.parse_package_spec(str(tmp_path))
        assert (spec.kind, spec.path) == ("path", str(tmp_path))

    def test_local_archive(self, tmp_path):
        archive = tmp_path / "bar.zip"
        archive.write_bytes(b"")
        spec = pyapps.parse_package_spec(str(archive))
        assert (spec.kind, spec.url) == ("archive", str(archive))

    def test_same_named_folder_does_not_shadow_registry_name(self, tmp_path, monkeypatch):
        (tmp_path / "black").mkdir()
        monkeypatch.chdir(tmp_path)
        spec = pyapps.parse_package_spec("black")
        assert (spec.kind, spec.name) == ("registry", "black")
        assert pyapps.parse_package_spec("black@23.1").kind == "registry"

    def test_relative_path_is_local(self, tmp_path, monkeypatch):
        (tmp_path / "black").mkdir()
        monkeypatch.chdir(tmp_path)
        spec = pyapps.parse_package_spec("./black")
        assert (spec.kind, spec.path) == ("path", str(tmp_path / "black"))

    def test_missing_local_path(self, tmp_path):
        with pytest.raises(pyapps.InvalidPackageSpec, match="No such directory or archive"):
            pyapps.parse_package_spec(str(tmp_path / "absent"))

    @pytest.mark.parametrize("text", ["", "   ", "bar@", "-bar", "bar@>>1", "git+"])
    def test_invalid(self, text):
        with pytest.raises(pyapps.InvalidPackageSpec):
            pyapps.parse_package_spec(text)


class TestReadProject:

    def test_table_form(self, tmp_path):
        root = write_project(tmp_path / "bar", "bar", apps={
            "bar": {},
            "bar-admin": {"module": "bar.admin", "python-options": ["-X", "dev"]},
        })
        info = pyapps.read_project(str(root))
        assert info.name == "bar"
        assert info.version == "1.0.0"
        assert info.uuid == pyapps.default_uuid("bar")
        assert info.apps["bar"] == pyapps.AppDeclaration("bar")
        assert info.apps["bar-admin"] == pyapps.AppDeclaration("bar-admin", "bar.admin", ["-X", "dev"])

    def test_array_form_later_declaration_wins(self, tmp_path):
        root = tmp_path / "bar"
        root.mkdir()
        (root / "pyproject.toml").write_text(
            '[project]\nname = "bar"\n\n'
            '[[tool.pyapps.apps]]\nname = "bar"\nmodule = "bar.old"\n\n'
            '[[tool.pyapps.apps]]\nname = "bar"\nmodule = "bar.new"\n',
            encoding="utf-8",
        )
        info = pyapps.read_project(str(root))
        assert list(info.apps) == ["bar"]
        assert info.apps["bar"].command == "bar.new"

    def test_options_as_string(self, tmp_path):
        root = write_project(tmp_path / "bar", "bar", apps={"bar": {"python-options": "-X dev -O"}})
        assert pyapps.read_project(str(root)).apps["bar"].options == ["-X", "dev", "-O"]

    def test_explicit_uuid(self, tmp_path):
        pkg_uuid = "0d2b1ab0-8a8f-4d3e-9d11-1e5e1b2f3c4d"
        root = write_project(tmp_path / "bar", "bar", pkg_uuid=pkg_uuid)
        assert pyapps.read_project(str(root)).uuid == uuid.UUID(pkg_uuid)

    def test_default_uuid_is_stable_across_spellings(self):
        assert pyapps.default_uuid("My_Tool") == pyapps.default_uuid("my-tool")

    def test_dependencies(self, tmp_path):
        root = write_project(tmp_path / "bar", "bar", dependencies=["rich>=13"])
        assert pyapps.read_project(str(root)).dependencies == ["rich>=13"]

    def test_missing_project_file(self, tmp_path):
        with pytest.raises(pyapps.ProjectFileMissing, match="Project file not found"):
            pyapps.read_project(str(tmp_path))

    def test_no_apps(self, tmp_path):
        root = write_project(tmp_path / "bar", "bar", apps={})
        with pytest.raises(pyapps.NoAppsDeclared, match="No apps found"):
            pyapps.read_project(str(root))
        assert pyapps.read_project(str(root), require_apps=False).apps == {}

    def test_unparsable(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[project\n", encoding="utf-8")
        with pytest.raises(pyapps.ProjectFileInvalid):
            pyapps.read_project(str(tmp_path))

    @pytest.mark.parametrize("content", [
        'tool = "x"\n\n[project]\nname = "bar"\n',
        'project = "bar"\n',
        '[project]\nname = "bar"\n\n[tool]\npyapps = 3\n',
    ])
    def test_non_table_sections(self, tmp_path, content):
        (tmp_path / "pyproject.toml").write_text(content, encoding="utf-8")
        with pytest.raises(pyapps.ProjectFileInvalid, match="must be a table"):
            pyapps.read_project(str(tmp_path))

    @pytest.mark.parametrize("deps", ['"requests"', "[1, 2]", '{ a = "b" }'])
    def test_dependencies_must_be_list_of_strings(self, tmp_path, deps):
        (tmp_path / "pyproject.toml").write_text(
            f'[project]\nname = "bar"\ndependencies = {deps}\n', encoding="utf-8")
        with pytest.raises(pyapps.ProjectFileInvalid, match="dependencies"):
            pyapps.read_project(str(tmp_path), require_apps=False)

    @pytest.mark.parametrize("app_name", ["../evil", ".hidden", "a b"])
    def test_unsafe_app_names(self, tmp_path, app_name):
        root = write_project(tmp_path / "bar", "bar", apps={app_name: {}})
        with pytest.raises(pyapps.ProjectFileInvalid, match="Invalid app name"):
            pyapps.read_project(str(root))

    def test_bad_options(self, tmp_path):
        root = write_project(tmp_path / "bar", "bar", apps={"bar": {"python-options": [1, 2]}})
        with pytest.raises(pyapps.ProjectFileInvalid, match="python-options"):
            pyapps.read_project(str(root))
