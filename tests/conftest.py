"""测试全局配置与环境夹具。

将 `src` 目录加入 `sys.path`，以便在未打包安装时可直接导入包；
同时提供 `github_env` fixture，构造一套完整的 CI 环境变量与事件文件。
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Dict

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

REQUIRED_ENV: Dict[str, str] = {
    "GITHUB_ACTIONS": "true",
    "GITHUB_ACTION": "__run",
    "GITHUB_ACTION_REPOSITORY": "",
    "GITHUB_ACTOR": "octocat",
    "GITHUB_API_URL": "https://api.github.com",
    "GITHUB_GRAPHQL_URL": "https://api.github.com/graphql",
    "GITHUB_SERVER_URL": "https://github.com",
    "GITHUB_EVENT_NAME": "push",
    "GITHUB_JOB": "build",
    "GITHUB_RUN_ID": "1234567890",
    "GITHUB_RUN_NUMBER": "42",
    "GITHUB_RUN_ATTEMPT": "1",
    "GITHUB_RETENTION_DAYS": "90",
    "GITHUB_WORKFLOW": "ci",
    "GITHUB_REPOSITORY": "octo/monorepo",
    "GITHUB_REPOSITORY_OWNER": "octo",
    "GITHUB_REF": "refs/heads/main",
    "GITHUB_REF_NAME": "main",
    "GITHUB_REF_TYPE": "branch",
    "GITHUB_SHA": "0123456789abcdef0123456789abcdef01234567",
    "RUNNER_OS": "Linux",
    "RUNNER_ARCH": "X64",
}

# 各测试按需设置的可选变量，先统一清理，避免受宿主 CI 环境影响
OPTIONAL_ENV = (
    "MATRIX_VALUES_JSON",
    "ARTIFACTS_DIR",
    "CI_NAME",
    "BUILD_OUTPUT",
    "SECRETS",
    "RUNNER_DEBUG",
)


@pytest.fixture
def github_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Dict[str, str]:
    """写入事件文件并设置完整的 CI 环境变量。

    返回值:
        dict: 已设置的环境变量副本，可直接作为 `environ` 传给 runner。

    副作用:
        通过 monkeypatch 修改进程环境，测试结束自动还原。
    """

    workspace = tmp_path / "workspace"
    workspace.mkdir()
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"before": "abc123"}), encoding="utf-8")

    env = dict(REQUIRED_ENV)
    env.update(
        {
            "GITHUB_EVENT_PATH": str(event),
            "GITHUB_WORKSPACE": str(workspace),
            "GITHUB_ENV": str(tmp_path / "env.txt"),
            "GITHUB_OUTPUT": str(tmp_path / "output.txt"),
            "GITHUB_PATH": str(tmp_path / "path.txt"),
            "GITHUB_STEP_SUMMARY": str(tmp_path / "summary.md"),
            "RUNNER_TEMP": str(tmp_path / "runner-temp"),
            "RUNNER_TOOL_CACHE": str(tmp_path / "tool-cache"),
        }
    )
    for key in OPTIONAL_ENV:
        monkeypatch.delenv(key, raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
