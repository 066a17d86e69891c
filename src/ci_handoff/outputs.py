"""Step 输出写入（`GITHUB_OUTPUT` 行格式）。"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping, Sequence, Union


def render_value(value: Any) -> str:
    """渲染单个输出值。

    参数:
        value: 映射、序列（str 除外）与 None 以紧凑 JSON 内联；
            bool 渲染为 `true`/`false`；其余标量直接字符串化。

    返回值:
        str: 渲染结果；值内换行不做转义。
    """

    if isinstance(value, Mapping):
        value = dict(value)
    elif isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        value = list(value)
    if isinstance(value, (dict, list)) or value is None:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def write_output(path: Union[str, Path], outputs: Mapping[str, Any]) -> None:
    """将输出映射写为 `key=value` 行，覆盖目标文件原有内容。

    参数:
        path: 输出通道文件路径（通常为 `GITHUB_OUTPUT`）。
        outputs: 键 -> 值。

    返回值:
        无。

    副作用:
        覆盖写入文件。
    """

    text = "\n".join(f"{k}={render_value(v)}" for k, v in outputs.items())
    Path(path).write_text(text, encoding="utf-8")
