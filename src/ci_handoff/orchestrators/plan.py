"""按变更目录规划需要执行的 action 包及其构建矩阵。"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..matrix import MATRIX_FILE_NAME, expand_matrix, load_matrix_file, to_include

logger = logging.getLogger(__name__)

BUILD_ACTION_FILE = "build_action.py"
DEPLOY_ACTION_FILE = "deploy_action.py"


def is_action_dir(directory: Path) -> bool:
    """目录下是否同时存在 build 与 deploy action 模块。"""

    return (directory / BUILD_ACTION_FILE).is_file() and (
        directory / DEPLOY_ACTION_FILE
    ).is_file()


def find_action_dir(directory: Union[str, Path], root: Union[str, Path]) -> Optional[Path]:
    """自 `directory` 向上查找 action 包目录。

    参数:
        directory: 起始目录（通常是发生变更的包目录）。
        root: 工作区根目录；查找不会到达或越过该目录。

    返回值:
        Path 或 None: 找到的 action 目录。

    副作用:
        文件系统存在性检查。
    """

    current = Path(directory)
    stop = Path(root)
    while True:
        if is_action_dir(current):
            return current
        parent = current.parent
        if parent == stop or parent == current:
            return None
        current = parent


def plan_packages(
    changed_dirs: Iterable[Union[str, Path]], workspace: Union[str, Path]
) -> Dict[str, Any]:
    """生成 action 包执行计划。

    参数:
        changed_dirs: 发生变更的包目录列表（可含空行与工作区根目录，会被忽略）。
        workspace: 工作区根目录。

    返回值:
        dict: `{"count": n, "matrix": {"include": [{dir, name, build_matrix?}]}}`；
        包按首次出现顺序去重，有 `matrix.yaml` 的包附带展开后的 `build_matrix`。

    副作用:
        读取文件系统；矩阵声明非法时抛出 `MatrixConfigError`。
    """

    root = Path(workspace)
    packages: Dict[Path, str] = {}
    for raw in changed_dirs:
        if not str(raw).strip():
            continue
        path = Path(str(raw).strip())
        if path == root:
            continue
        found = find_action_dir(path, root)
        if found is not None and found not in packages:
            packages[found] = found.name

    include: List[Dict[str, Any]] = []
    for directory, name in packages.items():
        entry: Dict[str, Any] = {"dir": str(directory), "name": name}
        matrix_file = directory / MATRIX_FILE_NAME
        if matrix_file.is_file():
            config = load_matrix_file(matrix_file)
            if config is not None:
                jobs = expand_matrix(config)
                entry["build_matrix"] = to_include(jobs)
                logger.info("%s: %d matrix jobs", name, len(jobs))
        include.append(entry)
    return {"count": len(include), "matrix": {"include": include}}
