"""执行上下文（环境解析）。

将 CI 平台注入的环境变量校验为不可变的 `ExecutionContext`，并读取事件文件。
每次 build / deploy 调用开始时解析一次；环境不合法时直接失败，不重试。

参数:
    无显式入参，模块函数各自接收环境映射。

返回值:
    见各函数中文 Docstring 说明。

副作用:
    `parse_environment` 会读取 `GITHUB_EVENT_PATH` 指向的文件。
"""

from __future__ import annotations

import enum
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import EnvironmentValidationError, EventFileError, HandoffError

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class Mode(str, enum.Enum):
    """入口运行模式。

    `DECLARE` 仅用于收集声明（如矩阵），runner 立即返回且不产生任何副作用；
    `RUN` 为正常执行。
    """

    DECLARE = "declare"
    RUN = "run"


class ExecutionContext(BaseModel):
    """CI 平台提供的运行事实（不可变）。

    字段与 GitHub Actions 的默认环境变量一一对应（通过 alias 绑定），
    外加 secrets、矩阵与部署阶段使用的变量，以及解码后的 `event`。
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    # CI
    github_actions: str = Field(alias="GITHUB_ACTIONS")

    # 当前 step/action
    action: str = Field(alias="GITHUB_ACTION")
    action_path: Optional[str] = Field(None, alias="GITHUB_ACTION_PATH")
    action_repository: str = Field(alias="GITHUB_ACTION_REPOSITORY")

    # 触发者
    actor: str = Field(alias="GITHUB_ACTOR")
    actor_id: Optional[str] = Field(None, alias="GITHUB_ACTOR_ID")
    triggering_actor: Optional[str] = Field(None, alias="GITHUB_TRIGGERING_ACTOR")

    # API 端点
    api_url: str = Field(alias="GITHUB_API_URL")
    graphql_url: str = Field(alias="GITHUB_GRAPHQL_URL")
    server_url: str = Field(alias="GITHUB_SERVER_URL")

    # 事件
    event_name: str = Field(alias="GITHUB_EVENT_NAME")
    event_path: str = Field(alias="GITHUB_EVENT_PATH")
    base_ref: Optional[str] = Field(None, alias="GITHUB_BASE_REF")
    head_ref: Optional[str] = Field(None, alias="GITHUB_HEAD_REF")

    # Job / run
    job: str = Field(alias="GITHUB_JOB")
    run_id: str = Field(alias="GITHUB_RUN_ID")
    run_number: str = Field(alias="GITHUB_RUN_NUMBER")
    run_attempt: str = Field(alias="GITHUB_RUN_ATTEMPT")
    retention_days: str = Field(alias="GITHUB_RETENTION_DAYS")
    workflow: str = Field(alias="GITHUB_WORKFLOW")
    workflow_ref: Optional[str] = Field(None, alias="GITHUB_WORKFLOW_REF")
    workflow_sha: Optional[str] = Field(None, alias="GITHUB_WORKFLOW_SHA")

    # 仓库 / ref / commit
    repository: str = Field(alias="GITHUB_REPOSITORY")
    repository_id: Optional[str] = Field(None, alias="GITHUB_REPOSITORY_ID")
    repository_owner: str = Field(alias="GITHUB_REPOSITORY_OWNER")
    repository_owner_id: Optional[str] = Field(None, alias="GITHUB_REPOSITORY_OWNER_ID")
    ref: str = Field(alias="GITHUB_REF")
    ref_name: str = Field(alias="GITHUB_REF_NAME")
    ref_type: str = Field(alias="GITHUB_REF_TYPE")
    ref_protected: Optional[str] = Field(None, alias="GITHUB_REF_PROTECTED")
    sha: str = Field(alias="GITHUB_SHA")

    # 文件系统与 workflow command 文件
    workspace: str = Field(alias="GITHUB_WORKSPACE")
    env_file: str = Field(alias="GITHUB_ENV")
    output_file: str = Field(alias="GITHUB_OUTPUT")
    path_file: str = Field(alias="GITHUB_PATH")
    step_summary: str = Field(alias="GITHUB_STEP_SUMMARY")

    # Runner
    runner_name: Optional[str] = Field(None, alias="RUNNER_NAME")
    runner_os: str = Field(alias="RUNNER_OS")
    runner_arch: str = Field(alias="RUNNER_ARCH")
    runner_environment: Optional[str] = Field(None, alias="RUNNER_ENVIRONMENT")
    runner_debug: Optional[str] = Field(None, alias="RUNNER_DEBUG")
    runner_temp: str = Field(alias="RUNNER_TEMP")
    runner_tool_cache: str = Field(alias="RUNNER_TOOL_CACHE")

    secrets: Optional[str] = Field(None, alias="SECRETS")
    actions_runtime_token: Optional[str] = Field(None, alias="ACTIONS_RUNTIME_TOKEN")
    actions_cache_url: Optional[str] = Field(None, alias="ACTIONS_CACHE_URL")

    # 矩阵与部署阶段
    matrix_values_json: Optional[str] = Field(None, alias="MATRIX_VALUES_JSON")
    artifacts_dir: Optional[str] = Field(None, alias="ARTIFACTS_DIR")
    ci_name: Optional[str] = Field(None, alias="CI_NAME")
    build_output: Optional[str] = Field(None, alias="BUILD_OUTPUT")

    event: Dict[str, Any] = Field(default_factory=dict)

    @property
    def debug(self) -> bool:
        """runner 是否处于调试模式（`RUNNER_DEBUG=1`）。"""

        return self.runner_debug == "1"

    def load_secrets(
        self, schema: Optional[Type[SchemaT]] = None
    ) -> Union[Dict[str, Any], SchemaT]:
        """解码 `SECRETS` JSON 串，可选按 Pydantic 模型校验。

        参数:
            schema: 可选的 Pydantic 模型类；提供时返回模型实例。

        返回值:
            dict 或 schema 实例；未设置 `SECRETS` 时按空对象处理。

        副作用:
            无。
        """

        try:
            data = json.loads(self.secrets) if self.secrets else {}
        except json.JSONDecodeError as exc:
            raise HandoffError("SECRETS is not valid JSON") from exc
        if not isinstance(data, dict):
            raise HandoffError("SECRETS must be a JSON object")
        if schema is None:
            return data
        try:
            return schema.model_validate(data)
        except ValidationError as exc:
            fields = [".".join(str(p) for p in e["loc"]) for e in exc.errors()]
            raise HandoffError(f"SECRETS failed validation: {', '.join(fields)}") from exc


def _read_event(path: str) -> Dict[str, Any]:
    """读取并解码事件文件。

    参数:
        path: 事件 JSON 文件路径。

    返回值:
        dict: 事件对象。

    副作用:
        文件 IO；不可读或非 JSON 时抛出 `EventFileError`。
    """

    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise EventFileError(f"cannot read event file {path}: {exc}") from exc
    try:
        event = json.loads(text)
    except json.JSONDecodeError as exc:
        raise EventFileError(f"event file {path} is not valid JSON: {exc}") from exc
    if not isinstance(event, dict):
        raise EventFileError(f"event file {path} must contain a JSON object")
    return event


def parse_environment(environ: Optional[Mapping[str, str]] = None) -> ExecutionContext:
    """校验环境变量并构造 `ExecutionContext`。

    参数:
        environ: 环境变量映射，缺省使用 `os.environ`。

    返回值:
        ExecutionContext: 含解码后 `event` 的上下文。

    副作用:
        读取事件文件。缺失/格式错误的字段一次性全部列出并抛出
        `EnvironmentValidationError`。
    """

    env = dict(os.environ if environ is None else environ)
    # event 只能来自事件文件
    env.pop("event", None)
    try:
        ctx = ExecutionContext.model_validate(env)
    except ValidationError as exc:
        # 不带 input：原始输入是整个环境映射，可能含 secret
        errors = exc.errors(include_url=False, include_input=False)
        fields = [".".join(str(p) for p in e["loc"]) for e in errors]
        detail = "\n".join(f"  {f}: {e['msg']}" for f, e in zip(fields, errors))
        raise EnvironmentValidationError(fields, detail) from exc

    event = _read_event(ctx.event_path)
    logger.debug("parsed environment for %s run %s", ctx.repository, ctx.run_id)
    return ctx.model_copy(update={"event": event})


def parse_matrix_env(raw: Optional[str]) -> Dict[str, str]:
    """解码 `MATRIX_VALUES_JSON` 为当前矩阵组合。

    参数:
        raw: 变量原值；可为 None。

    返回值:
        dict: 维度名 -> 取值，例如 `{"arch": "amd64"}`；未设置、`"{}"` 或
        格式错误时返回空字典。

    副作用:
        格式错误时记录 warning，不抛出异常。
    """

    if not raw or raw == "{}":
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("MATRIX_VALUES_JSON is not valid JSON, treating as empty: %r", raw)
        return {}
    if not isinstance(data, dict):
        logger.warning("MATRIX_VALUES_JSON is not an object, treating as empty: %r", raw)
        return {}
    return {str(k): str(v) for k, v in data.items()}
