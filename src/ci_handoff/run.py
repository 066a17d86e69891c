"""命令行入口。

子命令:
- `expand`: 展开矩阵描述文件，打印调度器 `include` JSON；
- `plan`: 根据变更目录规划 action 包与矩阵，并写入 step 输出；
- `build` / `deploy`: 加载 action 模块并执行对应 runner；
- `persist`: 将 build 输出的 metadata 写为 metadata 单元。

示例:
    ci-handoff expand apps/kb
    git diff --name-only ... | xargs dirname | ci-handoff plan
    ci-handoff build apps/kb/build_action.py
"""

from __future__ import annotations

import importlib.util
import json as _json
import logging
import os
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, List, Optional

import typer

from .errors import HandoffError
from .matrix import MATRIX_FILE_NAME, expand_matrix, load_matrix_file, to_include
from .orchestrators.plan import plan_packages
from .outputs import write_output
from .runners.build import run_build
from .runners.deploy import persist_metadata_unit, run_deploy, run_single_deploy

app = typer.Typer(help="CI build/deploy 结果交接工具")


@app.callback()
def _root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出 DEBUG 日志"),
) -> None:
    """配置日志；`RUNNER_DEBUG=1` 时同样开启 DEBUG。"""

    debug = verbose or os.environ.get("RUNNER_DEBUG") == "1"
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _fail(exc: Exception) -> typer.Exit:
    typer.echo(f"error: {exc}", err=True)
    return typer.Exit(code=1)


def _load_action(path: Path) -> ModuleType:
    """按文件路径加载 action 模块。

    参数:
        path: action 文件路径。

    返回值:
        ModuleType: 已执行的模块对象。

    副作用:
        执行模块顶层代码；action 模块顶层应只包含定义。
    """

    if not path.is_file():
        raise typer.BadParameter(f"action file not found: {path}")
    spec = importlib.util.spec_from_file_location(f"ci_handoff_action_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise typer.BadParameter(f"cannot load action file: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _entry(module: ModuleType, name: str) -> Callable[..., Any]:
    fn = getattr(module, name, None)
    if not callable(fn):
        raise typer.BadParameter(f"{module.__file__} does not define a callable '{name}'")
    return fn


@app.command()
def expand(
    path: Path = typer.Argument(..., help="matrix.yaml 或其所在的 action 目录"),
) -> None:
    """展开矩阵并以 JSON 打印 `{"include": [...]}`。"""

    matrix_file = path / MATRIX_FILE_NAME if path.is_dir() else path
    if not matrix_file.is_file():
        raise typer.BadParameter(f"matrix file not found: {matrix_file}")
    try:
        jobs = expand_matrix(load_matrix_file(matrix_file))
    except HandoffError as exc:
        raise _fail(exc)
    typer.echo(_json.dumps(to_include(jobs), ensure_ascii=False))


@app.command()
def plan(
    dirs: Optional[List[str]] = typer.Argument(None, help="变更目录；缺省从标准输入逐行读取"),
    workspace: Optional[str] = typer.Option(
        None, "--workspace", help="工作区根目录（默认 GITHUB_WORKSPACE 或 CWD）"
    ),
) -> None:
    """规划变更的 action 包，写入 `count`/`matrix` 输出并打印计划 JSON。"""

    root = workspace or os.environ.get("GITHUB_WORKSPACE") or str(Path.cwd())
    changed = dirs if dirs else sys.stdin.read().splitlines()
    try:
        result = plan_packages(changed, root)
    except HandoffError as exc:
        raise _fail(exc)
    output_file = os.environ.get("GITHUB_OUTPUT")
    if output_file:
        write_output(output_file, {"count": result["count"], "matrix": result["matrix"]})
    typer.echo(_json.dumps(result, ensure_ascii=False))


@app.command()
def build(
    action_file: Path = typer.Argument(..., help="build action 文件"),
    entry: str = typer.Option("build", "--entry", help="build 函数名"),
) -> None:
    """执行 build action 并写出 metadata 与产物路径。"""

    module = _load_action(action_file)
    fn = _entry(module, entry)
    try:
        run_build(fn, payload_schema=getattr(module, "PAYLOAD_SCHEMA", None))
    except HandoffError as exc:
        raise _fail(exc)


@app.command()
def deploy(
    action_file: Path = typer.Argument(..., help="deploy action 文件"),
    entry: str = typer.Option("deploy", "--entry", help="deploy 函数名"),
    single: bool = typer.Option(
        False, "--single", help="非矩阵模式：从 BUILD_OUTPUT 读取 build 输出"
    ),
) -> None:
    """聚合 build 输出并执行 deploy action。"""

    module = _load_action(action_file)
    fn = _entry(module, entry)
    runner = run_single_deploy if single else run_deploy
    try:
        runner(fn, payload_schema=getattr(module, "PAYLOAD_SCHEMA", None))
    except HandoffError as exc:
        raise _fail(exc)


@app.command()
def persist(
    directory: Path = typer.Argument(..., help="metadata 单元目录"),
    metadata: Optional[str] = typer.Option(
        None, "--metadata", help="build 输出的 metadata；缺省从标准输入读取"
    ),
) -> None:
    """将 metadata 写为 `<directory>/metadata.json`。"""

    blob = metadata if metadata is not None else sys.stdin.read()
    try:
        path = persist_metadata_unit(directory, blob)
    except HandoffError as exc:
        raise _fail(exc)
    typer.echo(str(path))


def main() -> None:
    """CLI 入口包装。"""

    app()


if __name__ == "__main__":
    main()
