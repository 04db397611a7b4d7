"""依赖安装器 - 解析、拉取并递归安装依赖树

两个入口:
  - install_local(root): 安装根清单声明的全部依赖（及 --dev 时的开发依赖）
  - install(root, targets): 逐个安装指定目标；"." 或本地路径安装该清单的依赖，
    author/name[@version] 经注册表解析后拉取，再递归安装其清单中的依赖

并发模型:
  每个工作单元 = "安装一个包并把它的依赖加入队列"，由线程池执行；
  并发度为 1 时退化为调用线程内的 FIFO 队列，外部可见行为相同。

  同一次调用内，(author/name, 目标目录) 最多安装一次: 第一个被访问到的版本胜出，
  循环依赖 (A→B→A) 因此自然终止。

失败策略:
  任一包失败即设置中止标志，不再启动新的工作单元；已派发的单元允许跑完。
  写回清单失败只记录日志，不影响安装结果。
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Sequence

from depkit.core.config import InstallOptions
from depkit.core.dep.fetcher import PackageFetcher
from depkit.core.dep.models import (
    ANY_VERSION,
    PackageDescriptor,
    PackageIdentifier,
    is_local_target,
)
from depkit.core.dep.registry import RegistryManager, RegistrySet
from depkit.core.exceptions import (
    DepkitError,
    ManifestParseError,
    ManifestWriteError,
    PackageNotFoundError,
    ValidationError,
)
from depkit.core.manifest import (
    Manifest,
    find_manifest,
    load_manifest_dir,
    parse_manifest_file,
)
from depkit.core.manifest_writer import ManifestWriter
from depkit.utils.shell import CommandExecutor, run_cmd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallContext:
    """沿递归传递的不可变安装上下文"""

    out_dir: Path
    prefix: str = ""
    global_install: bool = False
    include_dev: bool = False

    def for_dependencies(self) -> InstallContext:
        """子依赖只安装运行时依赖，不安装开发依赖"""
        return replace(self, include_dev=False)


@dataclass
class InstallFailure:
    target: str
    reason: str
    code: str = "UNKNOWN"

    def __str__(self) -> str:
        return f"{self.target}: {self.reason}"


@dataclass
class InstallReport:
    """一次顶层安装调用的结果"""

    installed: list[str] = field(default_factory=list)
    failures: list[InstallFailure] = field(default_factory=list)
    saved: list[str] = field(default_factory=list)
    save_errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def message(self) -> str:
        """单行摘要；失败时只报告第一个失败"""
        if self.failures:
            return f"无法安装 {self.failures[0]}"
        return f"已安装 {len(self.installed)} 个包"


class _InstallRun:
    """单次顶层调用的共享状态: 去重集合、中止标志、工作队列"""

    def __init__(self, concurrency: int) -> None:
        self.abort = threading.Event()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._claimed: set[tuple[str, str]] = set()
        self._pending = 0
        self.resolved: dict[tuple[str, str], PackageDescriptor] = {}
        self.report = InstallReport()
        self._queue: deque[tuple[Callable[..., None], tuple[Any, ...]]] = deque()
        self._pool: ThreadPoolExecutor | None = None
        if concurrency > 1:
            self._pool = ThreadPoolExecutor(
                max_workers=concurrency, thread_name_prefix="depkit-install",
            )

    @staticmethod
    def key(package_id: str, out_dir: Path) -> tuple[str, str]:
        return (package_id, str(out_dir))

    def claim(self, package_id: str, out_dir: Path) -> bool:
        """首次认领返回 True；已认领（进行中或已完成）返回 False"""
        key = self.key(package_id, out_dir)
        with self._lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True

    def record(self, out_dir: Path, descriptor: PackageDescriptor) -> None:
        with self._lock:
            self.resolved[self.key(descriptor.identifier.id, out_dir)] = descriptor
            self.report.installed.append(descriptor.identifier.slug)

    def fail(self, target: str, exc: BaseException) -> None:
        code = exc.code if isinstance(exc, DepkitError) else type(exc).__name__
        with self._lock:
            self.report.failures.append(InstallFailure(target, str(exc), code))
        self.abort.set()
        logger.error("无法安装 %s: %s", target, exc)

    @property
    def failed(self) -> bool:
        return self.abort.is_set()

    def submit(self, fn: Callable[..., None], *args: Any) -> None:
        """派发一个工作单元；已中止时不再派发"""
        if self.abort.is_set():
            return
        if self._pool is None:
            self._queue.append((fn, args))
            return
        with self._lock:
            self._pending += 1
        try:
            self._pool.submit(self._run_unit, fn, args)
        except RuntimeError:
            self._done()
            raise

    def _invoke(self, fn: Callable[..., None], args: tuple[Any, ...]) -> None:
        try:
            fn(*args)
        except Exception as e:  # noqa: BLE001
            # 工作线程中的意外异常必须落到结果里，否则会被 Future 吞掉
            logger.exception("安装工作单元异常")
            self.fail(str(args[-1]) if args else "?", e)

    def _run_unit(self, fn: Callable[..., None], args: tuple[Any, ...]) -> None:
        try:
            self._invoke(fn, args)
        finally:
            self._done()

    def _done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def wait(self) -> None:
        """等待当前派发的全部单元（含其递归派发的子单元）完成"""
        if self._pool is None:
            while self._queue:
                fn, args = self._queue.popleft()
                if self.abort.is_set():
                    self._queue.clear()
                    break
                self._invoke(fn, args)
            return
        with self._idle:
            while self._pending:
                self._idle.wait()

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)


class Installer:
    """依赖安装编排器"""

    def __init__(
        self,
        *,
        registries: RegistrySet,
        fetcher: PackageFetcher,
        options: InstallOptions,
        manifest_names: Sequence[str],
        concurrency: int = 1,
        writer: ManifestWriter | None = None,
        executor: CommandExecutor | None = None,
        global_dir: str | Path = "",
        registry_manager: RegistryManager | None = None,
    ) -> None:
        self.registries = registries
        self.registry_manager = registry_manager
        self.fetcher = fetcher
        self.options = options
        self.manifest_names = list(manifest_names)
        self.concurrency = max(1, concurrency)
        self.writer = writer
        self.executor = executor
        self.global_dir = Path(global_dir) if global_dir else None

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    def install_local(self, root: Manifest | None) -> InstallReport:
        """安装根清单中的依赖，不解析新的顶层标识"""
        run = _InstallRun(self.concurrency)
        try:
            if root is None:
                logger.warning("当前目录没有清单文件，无依赖可安装")
            else:
                self._enqueue_manifest(run, self._root_context(root), root)
                run.wait()
        finally:
            run.close()
        self._log_summary(run.report)
        return run.report

    def install(self, root: Manifest | None, targets: Sequence[str]) -> InstallReport:
        """按顺序安装每个目标，第一个失败即停止"""
        if not targets:
            return self.install_local(root)
        run = _InstallRun(self.concurrency)
        try:
            for target in targets:
                if run.failed:
                    break
                logger.debug("安装目标: %s", target)
                self._install_target(run, root, target)
        finally:
            run.close()
        self._log_summary(run.report)
        return run.report

    # ------------------------------------------------------------------
    # 顶层目标
    # ------------------------------------------------------------------

    def _root_context(self, root: Manifest | None) -> InstallContext:
        opts = self.options
        prefix = opts.prefix or (root.prefix if root else "")
        if prefix:
            prefix = str(Path(prefix).expanduser().resolve())
        out_dir = Path(opts.out_dir)
        if opts.global_install and self.global_dir is not None:
            out_dir = self.global_dir
        return InstallContext(
            out_dir=out_dir,
            prefix=prefix,
            global_install=opts.global_install,
            include_dev=opts.dev,
        )

    def _install_target(self, run: _InstallRun, root: Manifest | None, target: str) -> None:
        ctx = self._root_context(root)

        if is_local_target(target):
            try:
                manifest = self._local_manifest(root, target)
            except (DepkitError, OSError) as e:
                run.fail(target, e)
                return
            if manifest is None:
                logger.warning("%s 没有清单文件，无依赖可安装", target)
                return
            self._enqueue_manifest(run, ctx, manifest)
            run.wait()
            return

        try:
            ident = PackageIdentifier.parse(target)
        except ValidationError as e:
            run.fail(target, e)
            return

        key = run.key(ident.id, ctx.out_dir)
        earlier = run.resolved.get(key)
        if earlier is None:
            run.submit(self._install_unit, run, ctx, ident.slug)
        else:
            # 前面的目标已把它作为依赖装好，请求的版本不再生效
            if ident.version != ANY_VERSION and earlier.saved_version != ident.version:
                logger.warning(
                    "%s 已在本次安装中以版本 %s 安装，忽略请求的版本 %s",
                    ident.id, earlier.saved_version, ident.version,
                )
            if ctx.include_dev:
                for slug in earlier.development:
                    run.submit(self._install_unit, run, ctx.for_dependencies(), slug)
        run.wait()
        if run.failed:
            return

        descriptor = run.resolved.get(key)
        if descriptor is not None:
            self._save(run.report, descriptor)

    def _local_manifest(self, root: Manifest | None, target: str) -> Manifest | None:
        if target in (".", "./"):
            return root
        path = Path(target)
        if path.is_dir():
            if find_manifest(path, self.manifest_names) is None:
                return None
            return load_manifest_dir(path, self.manifest_names)
        if path.is_file():
            return parse_manifest_file(path)
        raise ValidationError(f"本地路径不存在: {target}")

    def _save(self, report: InstallReport, descriptor: PackageDescriptor) -> None:
        if self.writer is None or not (self.options.save or self.options.save_dev):
            return
        try:
            if self.options.save:
                self.writer.save_dependency(descriptor)
            if self.options.save_dev:
                self.writer.save_dev_dependency(descriptor)
        except ManifestWriteError as e:
            logger.warning("保存依赖失败（安装结果不受影响）: %s", e)
            report.save_errors.append(str(e))
            return
        report.saved.append(descriptor.identifier.slug)

    # ------------------------------------------------------------------
    # 工作单元
    # ------------------------------------------------------------------

    def _enqueue_manifest(self, run: _InstallRun, ctx: InstallContext, manifest: Manifest) -> None:
        slugs = manifest.dependency_slugs()
        if ctx.include_dev:
            slugs += manifest.development_slugs()
        child_ctx = ctx.for_dependencies()
        for slug in slugs:
            run.submit(self._install_unit, run, child_ctx, slug)

    def _install_unit(self, run: _InstallRun, ctx: InstallContext, slug: str) -> None:
        """安装一个包并派发它的依赖"""
        if run.abort.is_set():
            logger.debug("已中止，跳过: %s", slug)
            return
        try:
            ident = PackageIdentifier.parse(slug)
        except ValidationError as e:
            run.fail(slug, e)
            return

        if not run.claim(ident.id, ctx.out_dir):
            logger.debug("本次安装已处理过 %s，跳过 %s", ident.id, slug)
            return

        try:
            descriptor = self.resolve(ident, ctx)
            pkg_dir = self._fetch(descriptor, ctx)
            manifest = load_manifest_dir(pkg_dir, self.manifest_names)
            descriptor.manifest_version = manifest.version
            descriptor.dependencies = manifest.dependency_slugs()
            descriptor.development = manifest.development_slugs()
            descriptor.registries = list(manifest.registries)
            self._build(descriptor, manifest, pkg_dir, ctx)
        except (DepkitError, OSError) as e:
            run.fail(slug, e)
            return

        run.record(ctx.out_dir, descriptor)
        self._enqueue_manifest(run, ctx, manifest)

    def resolve(self, ident: PackageIdentifier, ctx: InstallContext) -> PackageDescriptor:
        """在注册表中查找标识并构造 PackageDescriptor"""
        if self.registry_manager is not None:
            match = self.registry_manager.lookup(self.registries, ident.id)
        else:
            match = RegistryManager.find_package(self.registries, ident.id)
        if match is None:
            raise PackageNotFoundError(ident.id)
        return PackageDescriptor(
            identifier=ident,
            source=match.url,
            prefix=ctx.prefix,
            global_install=ctx.global_install,
            registry=match.registry,
        )

    def _fetch(self, descriptor: PackageDescriptor, ctx: InstallContext) -> Path:
        pkg_dir = ctx.out_dir / descriptor.name
        skip = not self.options.force and not ctx.global_install
        if skip and self._is_installed(descriptor, pkg_dir):
            logger.info("已安装，跳过拉取: %s -> %s", descriptor.identifier, pkg_dir)
            return pkg_dir
        ctx.out_dir.mkdir(parents=True, exist_ok=True)
        return self.fetcher.install(descriptor, ctx.out_dir, self.options.verbose)

    def _is_installed(self, descriptor: PackageDescriptor, pkg_dir: Path) -> bool:
        """目录中已有清单，且请求为 "*" 或清单版本与请求版本一致"""
        path = find_manifest(pkg_dir, self.manifest_names)
        if path is None:
            return False
        wanted = descriptor.identifier.version
        if wanted == ANY_VERSION:
            return True
        try:
            installed = parse_manifest_file(path).version
        except (ManifestParseError, OSError):
            return False
        if installed != wanted:
            logger.info(
                "%s 已安装版本 %s 与请求版本 %s 不同，重新拉取",
                descriptor.identifier.id, installed or "(未知)", wanted,
            )
            return False
        return True

    def _build(
        self, descriptor: PackageDescriptor, manifest: Manifest,
        pkg_dir: Path, ctx: InstallContext,
    ) -> None:
        """全局安装时执行包声明的构建命令"""
        if not ctx.global_install or not manifest.install:
            return
        env = {"PREFIX": ctx.prefix} if ctx.prefix else None
        run_cmd(
            manifest.install, cwd=str(pkg_dir), env=env,
            label=f"构建 {descriptor.identifier}", executor=self.executor,
        )

    @staticmethod
    def _log_summary(report: InstallReport) -> None:
        if report.success:
            logger.info("安装完成: %d 个包", len(report.installed))
        else:
            logger.error(
                "安装失败: %d 个包已安装, %d 个失败",
                len(report.installed), len(report.failures),
            )
