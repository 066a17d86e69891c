"""类型保留的 JSON 编解码。

JSON 本身无法表达时间、集合、NaN 等值，跨进程传递后会退化成字符串或报错。
编码时将这类值转换为 JSON 可表达的形式，并在 `meta.values` 中按路径记录类型
标记；解码时按标记还原。文档结构与 superjson 相同：

    {"json": <普通 JSON>, "meta": {"values": {"payload.timestamp": ["Date"]}}}

路径为以 `.` 连接的键（键内的 `\\` 转义为 `\\\\`，`.` 转义为 `\\.`），
根节点路径为空串。
"""

from __future__ import annotations

import json
import math
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Tuple

from pydantic import BaseModel

from .errors import PayloadDecodeError, SerializationError

# 集合元素解码后须可哈希，容器类元素会变成 list
_SET_ELEMENT_TYPES = (str, int, float, date, type(None))


def _escape(key: str) -> str:
    return key.replace("\\", "\\\\").replace(".", "\\.")


def _join(path: str, key: str) -> str:
    return f"{path}.{_escape(key)}" if path else _escape(key)


def _split(path: str) -> List[str]:
    if path == "":
        return []
    parts: List[str] = []
    buf: List[str] = []
    chars = iter(path)
    for ch in chars:
        if ch == "\\":
            buf.append(next(chars, "\\"))
        elif ch == ".":
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    parts.append("".join(buf))
    return parts


def _walk(value: Any, path: str, values: Dict[str, List[str]]) -> Any:
    """递归转换值并收集类型标记。"""

    if isinstance(value, BaseModel):
        return _walk(value.model_dump(), path, values)
    if isinstance(value, datetime):
        values[path] = ["Date"]
        return value.isoformat()
    if isinstance(value, date):
        values[path] = ["date"]
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        for v in value:
            if not isinstance(v, _SET_ELEMENT_TYPES):
                raise SerializationError(
                    f"set elements must be scalars, got {type(v).__name__} at '{path}'"
                )
        values[path] = ["set"]
        return [_walk(v, _join(path, str(i)), values) for i, v in enumerate(value)]
    if isinstance(value, bool) or value is None or isinstance(value, (str, int)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            values[path] = ["number"]
            return "NaN" if math.isnan(value) else ("Infinity" if value > 0 else "-Infinity")
        return value
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise SerializationError(f"object keys must be strings, got {k!r}")
            out[k] = _walk(v, _join(path, k), values)
        return out
    if isinstance(value, (list, tuple)):
        return [_walk(v, _join(path, str(i)), values) for i, v in enumerate(value)]
    raise SerializationError(f"cannot serialize value of type {type(value).__name__}")


def encode(value: Any) -> Dict[str, Any]:
    """将任意支持的值编码为文档对象。

    参数:
        value: 待编码值（可含 datetime/date/set/NaN、Pydantic 模型）。

    返回值:
        dict: `{"json": ..., "meta": {"values": ...}}`；无需标记时省略 meta。

    副作用:
        无；不支持的类型抛出 `SerializationError`。
    """

    values: Dict[str, List[str]] = {}
    doc: Dict[str, Any] = {"json": _walk(value, "", values)}
    if values:
        doc["meta"] = {"values": values}
    return doc


def _to_datetime(raw: Any) -> datetime:
    # JS 端产出的时间以 Z 结尾
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


_DECODERS: Dict[str, Callable[[Any], Any]] = {
    "Date": _to_datetime,
    "date": lambda raw: date.fromisoformat(str(raw)),
    "set": lambda raw: set(raw),
    "number": lambda raw: float(raw),
}


def _tag_of(annotation: Any) -> str:
    if isinstance(annotation, str):
        return annotation
    if isinstance(annotation, list) and annotation and isinstance(annotation[0], str):
        return annotation[0]
    raise PayloadDecodeError(f"malformed type annotation: {annotation!r}")


def decode(doc: Any) -> Any:
    """按类型标记还原文档。

    参数:
        doc: `encode` 产出的文档对象（已 JSON 解析）。

    返回值:
        还原后的值。

    副作用:
        无；结构或标记非法时抛出 `PayloadDecodeError`。
    """

    if not isinstance(doc, dict) or "json" not in doc:
        raise PayloadDecodeError("document must be an object with a 'json' key")
    meta = doc.get("meta") or {}
    annotations = meta.get("values") if isinstance(meta, dict) else None
    root: List[Any] = [doc["json"]]
    if not annotations:
        return root[0]
    if not isinstance(annotations, dict):
        raise PayloadDecodeError("meta.values must be an object")

    # 先还原深层节点，集合等容器最后转换
    items: List[Tuple[List[str], str]] = sorted(
        ((_split(p), _tag_of(a)) for p, a in annotations.items()),
        key=lambda it: len(it[0]),
        reverse=True,
    )
    for parts, tag in items:
        decoder = _DECODERS.get(tag)
        if decoder is None:
            raise PayloadDecodeError(f"unknown type annotation: {tag}")
        parent: Any = root
        key: Any = 0
        try:
            for part in parts:
                parent = parent[key]
                key = int(part) if isinstance(parent, list) else part
            parent[key] = decoder(parent[key])
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise PayloadDecodeError(
                f"cannot apply '{tag}' at path '{'.'.join(parts)}': {exc}"
            ) from exc
    return root[0]


def dumps(value: Any) -> str:
    """编码并序列化为紧凑 JSON 字符串。"""

    return json.dumps(
        encode(value), separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )


def loads(text: str) -> Any:
    """解析 JSON 字符串并按类型标记还原。

    参数:
        text: `dumps` 产出的字符串。

    返回值:
        还原后的值。

    副作用:
        无；非 JSON 时抛出 `PayloadDecodeError`。
    """

    try:
        doc = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PayloadDecodeError(f"not a JSON document: {exc}") from exc
    return decode(doc)
