"""产物路径解析与单元目录扫描。"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Sequence, Union

from ..errors import DeployConfigurationError


def list_unit_dirs(root: Union[str, Path], prefix: str, suffix: str) -> List[Path]:
    """列出产物根目录下匹配前后缀的直接子目录（按名称排序）。

    参数:
        root: 下载产物的根目录。
        prefix: job 名前缀（`CI_NAME`）。
        suffix: 单元后缀，如 `-metadata`/`-artifacts`。

    返回值:
        List[Path]: 排序后的目录列表；排序消除文件系统枚举顺序的不确定性。

    副作用:
        读取目录；根目录不可读时抛出 `DeployConfigurationError`。
    """

    base = Path(root)
    try:
        entries = list(base.iterdir())
    except OSError as exc:
        raise DeployConfigurationError(
            f"failed to read artifacts directory {base}: {exc}"
        ) from exc
    names = sorted(
        e.name
        for e in entries
        if e.is_dir() and e.name.startswith(prefix) and e.name.endswith(suffix)
    )
    return [base / n for n in names]


def resolve_artifact_path(
    relative_path: str, candidate_dirs: Sequence[Union[str, Path]]
) -> str:
    """在候选目录中查找产物的绝对路径。

    去掉前导 `./` 得到规范形式，依次以（规范形式、原始形式）在每个候选目录
    （按列表顺序）中尝试，返回第一个存在的路径。绝对路径同样拼接在候选目录
    之下。

    参数:
        relative_path: build 时记录的相对路径。
        candidate_dirs: 候选根目录列表。

    返回值:
        str: 找到的路径；均不存在时原样返回 `relative_path`，由部署函数自行处理。

    副作用:
        文件系统存在性检查。
    """

    normalized = relative_path[2:] if relative_path.startswith("./") else relative_path
    candidates = [normalized] if normalized == relative_path else [normalized, relative_path]
    for d in candidate_dirs:
        for candidate in candidates:
            full = os.path.join(str(d), candidate.lstrip("/"))
            if os.path.exists(full):
                return full
    return relative_path
