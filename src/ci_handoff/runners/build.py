"""Build 阶段执行器。

解析环境与当前矩阵组合，调用一次调用方提供的 build 函数，并把其 payload 与
产物路径写入输出通道，供后续上传为 metadata 单元。

build 函数签名为 `fn(ctx, matrix)`，可为普通函数或协程函数；返回 None 表示
无输出，否则返回 `BuildResult`（或含 `payload`/`artifacts` 键的映射）。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    Union,
)

from pydantic import BaseModel, ValidationError

from .. import serde
from ..context import ExecutionContext, Mode, parse_environment, parse_matrix_env
from ..errors import SerializationError
from ..outputs import write_output

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactConfig:
    """带包含过滤的产物描述。

    属性:
        path: 产物路径（相对 job 工作根目录）。
        include: 可选的包含模式列表，交由外部上传步骤使用。
    """

    path: str
    include: Optional[Sequence[str]] = None


ArtifactSpec = Union[str, ArtifactConfig, Mapping[str, Any]]


@dataclass
class BuildResult:
    """单次 build 的结果。

    属性:
        payload: 任意可被类型保留编码的值（或 Pydantic 模型）。
        artifacts: 产物名 -> 路径或 `ArtifactConfig`。
    """

    payload: Any = None
    artifacts: Optional[Mapping[str, ArtifactSpec]] = None


BuildFn = Callable[
    [ExecutionContext, Dict[str, str]],
    Union[None, BuildResult, Mapping[str, Any], Awaitable[Any]],
]


def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    """调用函数；若返回 awaitable 则运行至完成。"""

    result = fn(*args)
    if inspect.isawaitable(result):

        async def _await() -> Any:
            return await result

        result = asyncio.run(_await())
    return result


def _artifact_path(name: str, spec: ArtifactSpec) -> str:
    if isinstance(spec, str):
        return spec
    if isinstance(spec, ArtifactConfig):
        return spec.path
    if isinstance(spec, Mapping) and isinstance(spec.get("path"), str):
        return str(spec["path"])
    raise SerializationError(f"artifact '{name}' must be a path or {{path, include}}")


def flatten_artifacts(
    artifacts: Optional[Mapping[str, ArtifactSpec]],
) -> Tuple[List[str], Dict[str, str]]:
    """将产物声明展平为路径列表与名称映射。

    参数:
        artifacts: 产物名 -> 路径 / `ArtifactConfig` / `{"path": ...}`。

    返回值:
        (paths, mapping): 声明顺序的原始路径列表，以及产物名 -> 路径。

    副作用:
        无。
    """

    paths: List[str] = []
    mapping: Dict[str, str] = {}
    for name, spec in (artifacts or {}).items():
        path = _artifact_path(name, spec)
        paths.append(path)
        mapping[name] = path
    return paths, mapping


def _coerce_result(result: Any) -> BuildResult:
    if isinstance(result, BuildResult):
        return result
    if isinstance(result, Mapping):
        return BuildResult(payload=result.get("payload"), artifacts=result.get("artifacts"))
    raise SerializationError(
        f"build function must return None, BuildResult or a mapping, got {type(result).__name__}"
    )


def _validate_payload(payload: Any, schema: Optional[Type[BaseModel]]) -> Any:
    if schema is None or payload is None or isinstance(payload, schema):
        return payload
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise SerializationError(
            f"build payload does not match {schema.__name__}: {exc}"
        ) from exc


def run_before(
    fn: Callable[[ExecutionContext], Any],
    *,
    mode: Mode = Mode.RUN,
    environ: Optional[Mapping[str, str]] = None,
) -> None:
    """执行 build 前置钩子：解析环境后调用一次 `fn(ctx)`，不写任何输出。

    参数:
        fn: 钩子函数，可为协程函数。
        mode: `Mode.DECLARE` 时直接返回。
        environ: 环境变量映射，缺省使用 `os.environ`。

    返回值:
        无。

    副作用:
        读取事件文件；`fn` 自身的副作用。
    """

    if mode is Mode.DECLARE:
        return
    ctx = parse_environment(environ)
    call_maybe_async(fn, ctx)


def run_build(
    fn: BuildFn,
    *,
    mode: Mode = Mode.RUN,
    environ: Optional[Mapping[str, str]] = None,
    payload_schema: Optional[Type[BaseModel]] = None,
) -> Optional[str]:
    """执行 build 并写出 metadata 与产物路径。

    参数:
        fn: build 函数 `fn(ctx, matrix)`。
        mode: `Mode.DECLARE` 时直接返回 None，不读取环境也不调用 `fn`。
        environ: 环境变量映射，缺省使用 `os.environ`。
        payload_schema: 可选 Pydantic 模型；提供时在编码前校验 payload。

    返回值:
        str 或 None: 写入输出通道的 metadata 串；`fn` 无返回时为 None。

    副作用:
        读取事件文件；调用 `fn`；覆盖写入 `GITHUB_OUTPUT`。`fn` 抛出的异常
        原样传播，此时不写任何输出。
    """

    if mode is Mode.DECLARE:
        return None
    ctx = parse_environment(environ)
    matrix = parse_matrix_env(ctx.matrix_values_json)
    logger.info("running build for matrix %s", matrix or "{}")

    result = call_maybe_async(fn, ctx, matrix)
    if result is None:
        logger.info("build returned no result, nothing to write")
        return None

    built = _coerce_result(result)
    paths, artifact_map = flatten_artifacts(built.artifacts)
    payload = _validate_payload(built.payload, payload_schema)
    blob = serde.dumps({"payload": payload, "artifacts": artifact_map})
    write_output(ctx.output_file, {"metadata": blob, "artifact_paths": "\n".join(paths)})
    logger.info("wrote metadata with %d artifact(s) to %s", len(paths), ctx.output_file)
    return blob
