"""构建矩阵展开。

将声明式的 `{维度: [取值...]}` 展开为有序的具体组合列表，并提供 YAML 描述文件
的加载与调度器所需的 `include` 格式。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, cast

import yaml

from .errors import MatrixConfigError

MatrixConfig = Mapping[str, Sequence[str]]

MATRIX_FILE_NAME = "matrix.yaml"


@dataclass(frozen=True)
class MatrixJob:
    """一个展开后的矩阵任务。

    属性:
        key: 各取值按维度声明顺序以 `-` 连接的可读键；不保证唯一。
        values: 维度名 -> 取值。
    """

    key: str
    values: Dict[str, str] = field(default_factory=dict)

    @property
    def values_json(self) -> str:
        """紧凑 JSON 形式的组合，保持维度声明顺序。"""

        return json.dumps(self.values, separators=(",", ":"), ensure_ascii=False)


def validate_matrix(config: Any) -> Dict[str, List[str]]:
    """校验矩阵声明并返回规范化副本。

    参数:
        config: 待校验对象。

    返回值:
        dict: 维度名 -> 取值列表（保持原顺序）。

    副作用:
        无；格式不符时抛出 `MatrixConfigError`。
    """

    if not isinstance(config, Mapping):
        raise MatrixConfigError(f"matrix must be a mapping, got {type(config).__name__}")
    out: Dict[str, List[str]] = {}
    for dim, values in config.items():
        if not isinstance(dim, str):
            raise MatrixConfigError(f"matrix dimension name must be a string: {dim!r}")
        if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
            raise MatrixConfigError(f"matrix dimension '{dim}' must be a list of strings")
        if not values:
            raise MatrixConfigError(f"matrix dimension '{dim}' has no values")
        for v in values:
            if not isinstance(v, str):
                raise MatrixConfigError(
                    f"matrix dimension '{dim}' has a non-string value: {v!r}"
                )
        out[dim] = list(values)
    return out


def expand_matrix(config: Optional[MatrixConfig]) -> List[MatrixJob]:
    """笛卡尔积展开矩阵。

    从单个空组合出发，按维度声明顺序逐个拓宽：每个已有组合被替换为该维度
    每个取值各一个的新组合，因此结果按（第一维取值顺序，第二维取值顺序，…）
    字典序排列。

    参数:
        config: 矩阵声明；None 或空映射表示“无矩阵”。

    返回值:
        List[MatrixJob]: 有序任务列表；无矩阵时为单个空组合任务。

    副作用:
        无。
    """

    if not config:
        return [MatrixJob(key="", values={})]
    dims = validate_matrix(config)
    combos: List[Dict[str, str]] = [{}]
    for dim, values in dims.items():
        combos = [{**combo, dim: v} for combo in combos for v in values]
    return [MatrixJob(key="-".join(c.values()), values=c) for c in combos]


def to_include(jobs: Sequence[MatrixJob]) -> Dict[str, List[Dict[str, str]]]:
    """转换为调度器的 `include` 格式。

    参数:
        jobs: `expand_matrix` 的结果。

    返回值:
        dict: `{"include": [{"matrix_key": ..., "matrix_values_json": ...}]}`。
    """

    return {
        "include": [
            {"matrix_key": j.key, "matrix_values_json": j.values_json} for j in jobs
        ]
    }


def load_matrix_file(path: Path) -> Optional[Dict[str, List[str]]]:
    """加载矩阵描述文件 `matrix.yaml`。

    参数:
        path: 描述文件路径。

    返回值:
        dict 或 None: 校验后的矩阵；文件为空时返回 None。

    副作用:
        文件 IO 读取；文件不存在会抛出 OSError。
    """

    with path.open("r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f)
    if loaded is None:
        return None
    return validate_matrix(cast(Dict[str, Any], loaded))
