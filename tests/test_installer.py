"""安装器集成测试 — 注册表解析 + 缓存 + 递归安装 + 写回清单"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from depkit.core.config import InstallOptions
from depkit.utils.shell import CommandResult


def _installed(world, name: str, out: str = "deps") -> Path:
    return world.project / out / name


class TestSingleInstall:
    def test_first_install_fetches_once_and_caches(self, world) -> None:
        """空缓存安装 foo/bar: 一次下载、一个缓存条目"""
        world.publish("foo/bar")
        c = world.container()

        report = c.installer.install(None, ["foo/bar"])

        assert report.success
        assert report.exit_code == 0
        assert world.archive_fetches() == 1
        assert (_installed(world, "bar") / "src" / "bar.c").exists()
        entries = c.cache.list_entries()
        assert [e["key"] for e in entries] == ["foo_bar_master"]

    def test_second_install_within_ttl_uses_cache(self, world) -> None:
        """TTL 内第二次安装不发起任何下载"""
        world.publish("foo/bar")
        world.container().installer.install(None, ["foo/bar"])
        assert world.archive_fetches() == 1

        other = InstallOptions(out_dir="deps2")
        report = world.container(other).installer.install(None, ["foo/bar"])

        assert report.success
        assert world.archive_fetches() == 1
        assert (_installed(world, "bar", "deps2") / "depkit.json").exists()

    def test_not_found_is_failure_without_cache_entry(self, world) -> None:
        world.publish("foo/bar")
        c = world.container()

        report = c.installer.install(None, ["foo/nonexistent"])

        assert not report.success
        assert report.exit_code != 0
        assert report.failures[0].target == "foo/nonexistent"
        assert report.failures[0].code == "PACKAGE_NOT_FOUND"
        assert "foo/nonexistent" in report.message()
        assert c.cache.list_entries() == []
        assert world.archive_fetches() == 0

    def test_invalid_slug_fails(self, world) -> None:
        report = world.container().installer.install(None, ["no-author"])
        assert not report.success
        assert report.failures[0].code == "VALIDATION_ERROR"

    def test_explicit_version_fetches_that_ref(self, world) -> None:
        world.publish("foo/bar", ref="1.2.0")
        report = world.container().installer.install(None, ["foo/bar@1.2.0"])
        assert report.success
        assert world.archive_fetches("/archive/1.2.0.tar.gz") == 1
        assert report.installed == ["foo/bar@1.2.0"]

    def test_already_installed_skips_fetch_unless_force(self, world) -> None:
        world.publish("foo/bar")
        world.container().installer.install(None, ["foo/bar"])
        world.container(InstallOptions(skip_cache=True)).installer.install(None, ["foo/bar"])
        assert world.archive_fetches() == 1

        forced = InstallOptions(force=True)
        report = world.container(forced).installer.install(None, ["foo/bar"])
        assert report.success
        assert world.archive_fetches() == 2

    def test_different_version_replaces_installed_copy(self, world) -> None:
        """已装 1.0.0 时请求 2.0.0 必须重新拉取，而不是沿用旧目录"""
        world.publish("foo/bar", ref="1.0.0")
        world.publish("foo/bar", ref="2.0.0")
        root = world.write_root()
        world.container().installer.install(None, ["foo/bar@1.0.0"])

        c = world.container(InstallOptions(save=True))
        report = c.installer.install(c.root_manifest, ["foo/bar@2.0.0"])

        assert report.success
        assert world.archive_fetches("/archive/2.0.0.tar.gz") == 1
        source = (_installed(world, "bar") / "src" / "bar.c").read_text()
        assert "foo/bar@2.0.0" in source
        manifest = json.loads((_installed(world, "bar") / "depkit.json").read_text())
        assert manifest["version"] == "2.0.0"
        assert json.loads(root.read_text())["dependencies"] == {"foo/bar": "2.0.0"}

    def test_same_version_already_installed_not_refetched(self, world) -> None:
        world.publish("foo/bar", ref="1.0.0")
        world.container().installer.install(None, ["foo/bar@1.0.0"])

        skip = InstallOptions(skip_cache=True)
        report = world.container(skip).installer.install(None, ["foo/bar@1.0.0"])

        assert report.success
        assert world.archive_fetches("/archive/1.0.0.tar.gz") == 1

    def test_package_published_after_catalog_cached(self, world) -> None:
        """缓存的目录里没有新发布的包时重新拉取目录一次"""
        world.publish("foo/bar")
        world.container().installer.install(None, ["foo/bar"])
        world.publish("foo/new")

        report = world.container().installer.install(None, ["foo/new"])

        assert report.success
        assert (_installed(world, "new") / "src" / "new.c").exists()
        assert world.http.count("index.json") == 2


class TestRecursiveInstall:
    @pytest.mark.parametrize("concurrency", [1, 4])
    def test_transitive_dependencies(self, world, concurrency: int) -> None:
        world.publish("foo/a", deps={"foo/b": "*"})
        world.publish("foo/b", deps={"foo/c": "*"})
        world.publish("foo/c")

        report = world.container(InstallOptions(concurrency=concurrency)).installer.install(
            None, ["foo/a"],
        )

        assert report.success
        assert sorted(report.installed) == ["foo/a", "foo/b", "foo/c"]
        for name in ("a", "b", "c"):
            assert (_installed(world, name) / "depkit.json").exists()

    @pytest.mark.parametrize("concurrency", [1, 4])
    def test_circular_dependencies_install_each_once(self, world, concurrency: int) -> None:
        """A→B→A 不会死循环，A 和 B 各下载一次"""
        world.publish("foo/a", deps={"foo/b": "*"})
        world.publish("foo/b", deps={"foo/a": "*"})

        report = world.container(InstallOptions(concurrency=concurrency)).installer.install(
            None, ["foo/a"],
        )

        assert report.success
        assert sorted(report.installed) == ["foo/a", "foo/b"]
        assert world.archive_fetches("foo/a/archive") == 1
        assert world.archive_fetches("foo/b/archive") == 1

    def test_conflicting_versions_first_visited_wins(self, world) -> None:
        """同一包被声明为两个版本时只装一份，取遍历时先遇到的版本"""
        world.publish("foo/lib", ref="1.0")
        world.publish("foo/lib", ref="2.0")
        world.publish("foo/app", deps={"foo/lib": "2.0"})
        world.write_root(dependencies={"foo/lib": "1.0", "foo/app": "*"})

        c = world.container(InstallOptions(concurrency=1))
        report = c.installer.install_local(c.root_manifest)

        assert report.success
        assert world.archive_fetches("foo/lib/archive/1.0") == 1
        assert world.archive_fetches("foo/lib/archive/2.0") == 0
        assert [s for s in report.installed if s.startswith("foo/lib")] == ["foo/lib@1.0"]
        manifest = json.loads((_installed(world, "lib") / "depkit.json").read_text())
        assert manifest["version"] == "1.0"

    def test_conflicting_versions_concurrent_single_copy(self, world) -> None:
        world.publish("foo/lib", ref="1.0")
        world.publish("foo/lib", ref="2.0")
        world.publish("foo/x", deps={"foo/lib": "1.0"})
        world.publish("foo/y", deps={"foo/lib": "2.0"})

        report = world.container(InstallOptions(concurrency=8)).installer.install(
            None, ["foo/x", "foo/y"],
        )

        assert report.success
        assert world.archive_fetches("foo/lib/archive") == 1
        assert len([s for s in report.installed if s.startswith("foo/lib")]) == 1

    def test_shared_dependency_fetched_once(self, world) -> None:
        world.publish("foo/x", deps={"foo/common": "*"})
        world.publish("foo/y", deps={"foo/common": "*"})
        world.publish("foo/common")
        world.write_root(dependencies={"foo/x": "*", "foo/y": "*"})

        c = world.container(InstallOptions(concurrency=4))
        report = c.installer.install_local(c.root_manifest)

        assert report.success
        assert world.archive_fetches("foo/common/archive") == 1

    def test_target_claimed_earlier_at_other_version_warns(self, world, caplog) -> None:
        """后面的顶层目标已被前面的目标以另一版本装入时给出警告"""
        world.publish("foo/a", deps={"foo/b": "1.0"})
        world.publish("foo/b", ref="1.0", dev={"foo/b-test": "*"})
        world.publish("foo/b", ref="2.0")
        world.publish("foo/b-test")
        root = world.write_root()

        c = world.container(InstallOptions(concurrency=1, dev=True, save=True))
        with caplog.at_level(logging.WARNING, logger="depkit.core.installer"):
            report = c.installer.install(c.root_manifest, ["foo/a", "foo/b@2.0"])

        assert report.success
        assert world.archive_fetches("foo/b/archive/2.0") == 0
        warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert any("foo/b" in m and "1.0" in m and "2.0" in m for m in warnings)
        # 作为顶层目标时仍安装其开发依赖，写回实际安装的版本
        assert "foo/b-test" in report.installed
        assert json.loads(root.read_text())["dependencies"]["foo/b"] == "1.0"

    def test_target_claimed_earlier_same_version_silent(self, world, caplog) -> None:
        world.publish("foo/a", deps={"foo/b": "1.0"})
        world.publish("foo/b", ref="1.0")

        c = world.container(InstallOptions(concurrency=1))
        with caplog.at_level(logging.WARNING, logger="depkit.core.installer"):
            report = c.installer.install(None, ["foo/a", "foo/b@1.0"])

        assert report.success
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


class TestDevelopmentDependencies:
    def test_dev_only_for_directly_requested(self, world) -> None:
        world.publish("foo/a", deps={"foo/b": "*"}, dev={"foo/a-test": "*"})
        world.publish("foo/b", dev={"foo/b-test": "*"})
        world.publish("foo/a-test")
        world.publish("foo/b-test")

        report = world.container(InstallOptions(dev=True)).installer.install(None, ["foo/a"])

        assert report.success
        assert "foo/a-test" in report.installed
        assert "foo/b-test" not in report.installed
        assert world.archive_fetches("foo/b-test") == 0

    def test_dev_not_installed_without_flag(self, world) -> None:
        world.publish("foo/a", dev={"foo/a-test": "*"})
        world.publish("foo/a-test")
        report = world.container().installer.install(None, ["foo/a"])
        assert report.installed == ["foo/a"]

    def test_install_local_with_dev(self, world) -> None:
        world.publish("foo/run")
        world.publish("foo/check")
        world.write_root(dependencies={"foo/run": "*"}, development={"foo/check": "*"})

        c = world.container(InstallOptions(dev=True))
        report = c.installer.install_local(c.root_manifest)

        assert sorted(report.installed) == ["foo/check", "foo/run"]


class TestFailurePolicy:
    def test_missing_dependency_aborts_run(self, world) -> None:
        world.publish("foo/a", deps={"foo/ghost": "*"})

        report = world.container().installer.install(None, ["foo/a", "foo/later"])

        assert not report.success
        assert report.failures[0].target == "foo/ghost"
        # 第一个目标失败后不再处理后续目标
        assert world.http.count("foo/later") == 0

    def test_sequential_abort_stops_siblings(self, world) -> None:
        world.publish("foo/ok")
        world.publish("foo/after")
        world.write_root(dependencies={"foo/ok": "*", "foo/broken": "*", "foo/after": "*"})

        c = world.container(InstallOptions(concurrency=1))
        report = c.installer.install_local(c.root_manifest)

        assert not report.success
        assert report.installed == ["foo/ok"]
        assert world.archive_fetches("foo/after") == 0

    def test_malformed_dependency_manifest_fails(self, world) -> None:
        world.publish("foo/a", deps={"foo/bad": "*"})
        world.publish("foo/bad", raw_manifest="{not json")

        report = world.container().installer.install(None, ["foo/a"])

        assert not report.success
        assert report.failures[0].target == "foo/bad"
        assert report.failures[0].code == "MANIFEST_PARSE_ERROR"

    def test_malformed_root_manifest_is_ignored(self, world) -> None:
        (world.project / "depkit.json").write_text("{oops", encoding="utf-8")
        world.publish("foo/bar")

        c = world.container()
        assert c.root_manifest is None
        report = c.installer.install(c.root_manifest, ["foo/bar"])
        assert report.success

    def test_download_error_reported(self, world) -> None:
        world.publish("foo/bar")
        world.http.routes.pop("https://example.com/foo/bar/archive/master.tar.gz")

        report = world.container().installer.install(None, ["foo/bar"])

        assert not report.success
        assert report.failures[0].code == "FETCH_FAILED"
        assert "foo/bar" in report.message()


class TestSave:
    def test_save_writes_dependency(self, world) -> None:
        world.publish("foo/bar", ref="1.0")
        root = world.write_root(dependencies={})

        c = world.container(InstallOptions(save=True))
        report = c.installer.install(c.root_manifest, ["foo/bar@1.0"])

        assert report.success
        assert report.saved == ["foo/bar@1.0"]
        data = json.loads(root.read_text())
        assert data["dependencies"] == {"foo/bar": "1.0"}
        assert data["name"] == "project"

    def test_save_dev_writes_development_section(self, world) -> None:
        world.publish("foo/bar", ref="1.0")
        root = world.write_root()

        c = world.container(InstallOptions(save_dev=True))
        c.installer.install(c.root_manifest, ["foo/bar@1.0"])

        data = json.loads(root.read_text())
        assert data["development"] == {"foo/bar": "1.0"}
        assert "dependencies" not in data

    def test_save_any_version_records_manifest_version(self, world) -> None:
        world.publish("foo/bar", version="3.1.4")
        root = world.write_root()

        c = world.container(InstallOptions(save=True))
        c.installer.install(c.root_manifest, ["foo/bar"])

        assert json.loads(root.read_text())["dependencies"] == {"foo/bar": "3.1.4"}

    def test_save_failure_does_not_fail_install(self, world) -> None:
        """没有清单可写时只记录错误，安装仍然成功"""
        world.publish("foo/bar")

        c = world.container(InstallOptions(save=True))
        report = c.installer.install(None, ["foo/bar"])

        assert report.success
        assert report.saved == []
        assert report.save_errors

    def test_failed_install_is_not_saved(self, world) -> None:
        root = world.write_root()
        c = world.container(InstallOptions(save=True))
        c.installer.install(c.root_manifest, ["foo/missing"])
        assert "dependencies" not in json.loads(root.read_text())


class TestLocalTargets:
    def test_dot_installs_root_dependencies(self, world) -> None:
        world.publish("foo/bar")
        world.write_root(dependencies={"foo/bar": "*"})

        c = world.container()
        report = c.installer.install(c.root_manifest, ["."])

        assert report.success
        assert report.installed == ["foo/bar"]

    def test_no_targets_means_install_local(self, world) -> None:
        world.publish("foo/bar")
        world.write_root(dependencies={"foo/bar": "*"})

        c = world.container()
        report = c.installer.install(c.root_manifest, [])

        assert report.installed == ["foo/bar"]

    def test_directory_target_installs_its_manifest(self, world, tmp_path: Path) -> None:
        world.publish("foo/bar")
        vendored = tmp_path / "vendored"
        vendored.mkdir()
        (vendored / "package.json").write_text(
            json.dumps({"dependencies": {"foo/bar": "*"}}), encoding="utf-8",
        )

        report = world.container().installer.install(None, [str(vendored)])

        assert report.success
        assert report.installed == ["foo/bar"]

    def test_install_local_without_manifest_is_noop(self, world) -> None:
        report = world.container().installer.install_local(None)
        assert report.success
        assert report.installed == []

    def test_local_source_in_catalog_is_copied(self, world, tmp_path: Path) -> None:
        src = tmp_path / "checkout"
        (src / "src").mkdir(parents=True)
        (src / "src" / "local.c").write_text("int x;\n", encoding="utf-8")
        world.catalog["foo/local"] = str(src)
        world._sync_catalog()

        c = world.container()
        report = c.installer.install(None, ["foo/local"])

        assert report.success
        assert (_installed(world, "local") / "src" / "local.c").exists()
        assert world.archive_fetches() == 0
        assert c.cache.list_entries() == []


class _RecordingExecutor:
    def __init__(self, returncode: int = 0) -> None:
        self.returncode = returncode
        self.calls: list[dict] = []

    def execute(self, cmd, *, cwd=".", env=None, timeout=None) -> CommandResult:
        self.calls.append({"cmd": cmd, "cwd": cwd, "env": env or {}})
        return CommandResult(returncode=self.returncode, stdout="", stderr="boom")


class TestGlobalInstall:
    def _container(self, world, executor, prefix: str):
        from depkit.services.container import ServiceContainer
        return ServiceContainer(
            world.config(),
            InstallOptions(global_install=True, prefix=prefix),
            cwd=world.project,
            http=world.http,
            executor=executor,
        )

    def test_runs_build_command_with_prefix(self, world, tmp_path: Path) -> None:
        world.publish("foo/tool", install="make install")
        executor = _RecordingExecutor()
        prefix = tmp_path / "usr"

        report = self._container(world, executor, str(prefix)).installer.install(
            None, ["foo/tool"],
        )

        assert report.success
        assert len(executor.calls) == 1
        call = executor.calls[0]
        assert call["cmd"] == "make install"
        assert call["env"]["PREFIX"] == str(prefix.resolve())
        assert Path(call["cwd"]).parent == world.cache_dir / "global"
        assert not (world.project / "deps").exists()

    def test_build_failure_is_install_failure(self, world, tmp_path: Path) -> None:
        world.publish("foo/tool", install="make install")
        executor = _RecordingExecutor(returncode=2)

        report = self._container(world, executor, str(tmp_path)).installer.install(
            None, ["foo/tool"],
        )

        assert not report.success
        assert report.failures[0].code == "EXECUTION_ERROR"
