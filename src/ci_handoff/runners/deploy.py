"""Deploy 阶段聚合器。

扫描产物根目录下各矩阵 job 的 metadata 单元，按目录名排序依次：
- 合并产物映射（同名产物后者覆盖前者）；
- 解码 payload 并追加到有序列表；
然后在 `-artifacts` 单元中解析产物的实际路径，最后调用一次部署函数。

缺失或损坏的单元只记录 warning 并跳过，不影响其余单元；跳过原因同时记录在
`DeployAggregate.errors` 中交给部署函数判断。

目录命名约定:
    `<CI_NAME><job key>-metadata/metadata.json` 与 `<CI_NAME><job key>-artifacts/`。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from .. import serde
from ..context import ExecutionContext, Mode, parse_environment, parse_matrix_env
from ..errors import DeployConfigurationError, HandoffError, PayloadDecodeError
from .build import call_maybe_async
from .resolver import list_unit_dirs, resolve_artifact_path

logger = logging.getLogger(__name__)

METADATA_FILE_NAME = "metadata.json"
METADATA_SUFFIX = "-metadata"
ARTIFACTS_SUFFIX = "-artifacts"


def unit_name(prefix: str, job_key: str, suffix: str) -> str:
    """按约定拼接单元目录名，例如 `kb-amd64-metadata`。"""

    return f"{prefix}{job_key}{suffix}"


@dataclass(frozen=True)
class UnitError:
    """被跳过的单元或 payload。

    属性:
        unit: 单元名（目录名，或单 payload 模式下的 `BUILD_OUTPUT`）。
        reason: 跳过原因。
    """

    unit: str
    reason: str


@dataclass
class DeployAggregate:
    """部署时视图，每次部署重新构建，不持久化。

    属性:
        matrix: 当前矩阵组合。
        build: 按单元排序收集的 payload 列表。
        artifacts: 产物名 -> 解析后的路径（找不到时为原始相对路径）。
        errors: 被跳过的单元或 payload 及原因。
    """

    matrix: Dict[str, str] = field(default_factory=dict)
    build: List[Any] = field(default_factory=list)
    artifacts: Dict[str, str] = field(default_factory=dict)
    errors: List[UnitError] = field(default_factory=list)


DeployFn = Callable[[ExecutionContext, DeployAggregate], Any]


def _parse_document(text: str, unit: str, errors: List[UnitError]) -> Optional[Dict[str, Any]]:
    try:
        doc = json.loads(text.strip())
    except json.JSONDecodeError as exc:
        logger.warning("skipping %s: metadata is not valid JSON (%s)", unit, exc)
        errors.append(UnitError(unit, f"invalid JSON: {exc}"))
        return None
    if not isinstance(doc, dict) or not isinstance(doc.get("json"), dict):
        logger.warning("skipping %s: metadata has no 'json' object", unit)
        errors.append(UnitError(unit, "metadata has no 'json' object"))
        return None
    return doc


def _extract_artifacts(doc: Mapping[str, Any], unit: str) -> Dict[str, str]:
    raw = doc["json"].get("artifacts") or {}
    if not isinstance(raw, dict):
        logger.warning("%s: 'artifacts' is not an object, ignoring", unit)
        return {}
    out: Dict[str, str] = {}
    for name, path in raw.items():
        if isinstance(path, str):
            out[name] = path
        else:
            logger.warning("%s: artifact '%s' has a non-string path, ignoring", unit, name)
    return out


def decode_payload(doc: Mapping[str, Any], schema: Optional[Type[BaseModel]] = None) -> Any:
    """从 metadata 文档中解码 payload。

    参数:
        doc: 已 JSON 解析的 metadata 文档。
        schema: 可选 Pydantic 模型；提供时返回模型实例。

    返回值:
        payload（可能为 None）。

    副作用:
        无；解码或校验失败抛出 `PayloadDecodeError`。
    """

    value = serde.decode(doc)
    payload = value.get("payload") if isinstance(value, dict) else None
    if schema is None or payload is None:
        return payload
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise PayloadDecodeError(
            f"payload does not match {schema.__name__}: {exc}"
        ) from exc


def _collect(
    doc: Mapping[str, Any],
    unit: str,
    schema: Optional[Type[BaseModel]],
    merged: Dict[str, str],
    payloads: List[Any],
    errors: List[UnitError],
) -> None:
    # 产物与 payload 分开提取：payload 损坏不影响产物合并
    merged.update(_extract_artifacts(doc, unit))
    try:
        payload = decode_payload(doc, schema)
    except PayloadDecodeError as exc:
        logger.warning("skipping payload of %s: %s", unit, exc)
        errors.append(UnitError(unit, str(exc)))
        return
    if payload is not None:
        payloads.append(payload)


def aggregate(
    artifacts_root: Union[str, Path],
    ci_name: str,
    *,
    payload_schema: Optional[Type[BaseModel]] = None,
    matrix: Optional[Mapping[str, str]] = None,
) -> DeployAggregate:
    """扫描并聚合所有 metadata 单元。

    参数:
        artifacts_root: 下载产物的根目录。
        ci_name: job 名前缀，用于过滤单元目录。
        payload_schema: 可选 Pydantic 模型，用于校验每个 payload。
        matrix: 当前矩阵组合，原样放入结果。

    返回值:
        DeployAggregate: 有序 payload 列表与解析后的产物映射。

    副作用:
        读取文件系统；根目录不可读时抛出 `DeployConfigurationError`。
    """

    payloads: List[Any] = []
    merged: Dict[str, str] = {}
    errors: List[UnitError] = []

    for unit_dir in list_unit_dirs(artifacts_root, ci_name, METADATA_SUFFIX):
        meta_path = unit_dir / METADATA_FILE_NAME
        if not meta_path.is_file():
            logger.warning("skipping %s: %s not found", unit_dir.name, METADATA_FILE_NAME)
            errors.append(UnitError(unit_dir.name, f"{METADATA_FILE_NAME} not found"))
            continue
        try:
            text = meta_path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("skipping %s: cannot read metadata (%s)", unit_dir.name, exc)
            errors.append(UnitError(unit_dir.name, f"unreadable: {exc}"))
            continue
        doc = _parse_document(text, unit_dir.name, errors)
        if doc is not None:
            _collect(doc, unit_dir.name, payload_schema, merged, payloads, errors)

    artifact_dirs = list_unit_dirs(artifacts_root, ci_name, ARTIFACTS_SUFFIX)
    resolved = {name: resolve_artifact_path(p, artifact_dirs) for name, p in merged.items()}
    for name, path in resolved.items():
        if path == merged[name]:
            logger.warning("artifact '%s' not found in any artifacts unit: %s", name, path)

    return DeployAggregate(
        matrix=dict(matrix or {}), build=payloads, artifacts=resolved, errors=errors
    )


def run_deploy(
    fn: DeployFn,
    *,
    mode: Mode = Mode.RUN,
    environ: Optional[Mapping[str, str]] = None,
    payload_schema: Optional[Type[BaseModel]] = None,
) -> Optional[DeployAggregate]:
    """聚合所有矩阵 job 的输出并调用一次部署函数。

    参数:
        fn: 部署函数 `fn(ctx, aggregate)`，可为协程函数。
        mode: `Mode.DECLARE` 时直接返回 None。
        environ: 环境变量映射，缺省使用 `os.environ`。
        payload_schema: 可选 Pydantic 模型，用于校验每个 payload。

    返回值:
        DeployAggregate 或 None: 传给 `fn` 的聚合视图。

    副作用:
        读取事件文件与产物目录；调用 `fn`。缺少 `ARTIFACTS_DIR`/`CI_NAME`
        时在扫描前抛出 `DeployConfigurationError`。
    """

    if mode is Mode.DECLARE:
        return None
    ctx = parse_environment(environ)
    if not ctx.artifacts_dir:
        raise DeployConfigurationError("ARTIFACTS_DIR environment variable is required")
    if not ctx.ci_name:
        raise DeployConfigurationError("CI_NAME environment variable is required")

    agg = aggregate(
        ctx.artifacts_dir,
        ctx.ci_name,
        payload_schema=payload_schema,
        matrix=parse_matrix_env(ctx.matrix_values_json),
    )
    logger.info(
        "aggregated %d payload(s) and %d artifact(s), %d unit(s) skipped",
        len(agg.build),
        len(agg.artifacts),
        len(agg.errors),
    )
    call_maybe_async(fn, ctx, agg)
    return agg


def run_single_deploy(
    fn: DeployFn,
    *,
    mode: Mode = Mode.RUN,
    environ: Optional[Mapping[str, str]] = None,
    payload_schema: Optional[Type[BaseModel]] = None,
) -> Optional[DeployAggregate]:
    """单 payload 变体：从 `BUILD_OUTPUT` 读取非矩阵 build 的 metadata。

    产物在 `ARTIFACTS_DIR` 下的 `-artifacts` 单元（若已设置）与工作区中依次查找。

    参数:
        fn: 部署函数 `fn(ctx, aggregate)`。
        mode: `Mode.DECLARE` 时直接返回 None。
        environ: 环境变量映射，缺省使用 `os.environ`。
        payload_schema: 可选 Pydantic 模型。

    返回值:
        DeployAggregate 或 None。

    副作用:
        读取事件文件；调用 `fn`。缺少 `BUILD_OUTPUT` 时抛出
        `DeployConfigurationError`。
    """

    if mode is Mode.DECLARE:
        return None
    ctx = parse_environment(environ)
    if not ctx.build_output:
        raise DeployConfigurationError("BUILD_OUTPUT environment variable is required")

    payloads: List[Any] = []
    merged: Dict[str, str] = {}
    errors: List[UnitError] = []
    doc = _parse_document(ctx.build_output, "BUILD_OUTPUT", errors)
    if doc is not None:
        _collect(doc, "BUILD_OUTPUT", payload_schema, merged, payloads, errors)

    candidates: List[Union[str, Path]] = []
    if ctx.artifacts_dir:
        candidates.extend(list_unit_dirs(ctx.artifacts_dir, ctx.ci_name or "", ARTIFACTS_SUFFIX))
    candidates.append(ctx.workspace)
    agg = DeployAggregate(
        matrix=parse_matrix_env(ctx.matrix_values_json),
        build=payloads,
        artifacts={name: resolve_artifact_path(p, candidates) for name, p in merged.items()},
        errors=errors,
    )
    call_maybe_async(fn, ctx, agg)
    return agg


def persist_metadata_unit(directory: Union[str, Path], blob: str) -> Path:
    """将 build 输出的 metadata 串写为单元目录下的 `metadata.json`。

    参数:
        directory: 单元目录（不存在时创建）。
        blob: `run_build` 写出的 metadata 串。

    返回值:
        Path: 写入的文件路径。

    副作用:
        创建目录并写文件；blob 不是 JSON 时抛出 `HandoffError`，不写文件。
    """

    text = blob.strip()
    try:
        json.loads(text)
    except json.JSONDecodeError as exc:
        raise HandoffError(f"metadata is not valid JSON: {exc}") from exc
    unit_dir = Path(directory)
    unit_dir.mkdir(parents=True, exist_ok=True)
    path = unit_dir / METADATA_FILE_NAME
    path.write_text(text, encoding="utf-8")
    return path
