"""异常层级。

库代码只抛出 `HandoffError` 的子类；是否终止进程由调用方（CLI）决定。
调用方传入的 build/deploy 函数抛出的异常不会被包装，原样向上传播。
"""

from __future__ import annotations

from typing import Iterable, List


class HandoffError(Exception):
    """所有可预期错误的基类。"""


class EnvironmentValidationError(HandoffError, ValueError):
    """环境变量缺失或格式错误（致命）。

    属性:
        fields: 所有校验失败的变量名，按出现顺序排列。
    """

    def __init__(self, fields: Iterable[str], detail: str = "") -> None:
        self.fields: List[str] = list(fields)
        msg = "invalid CI environment, missing or malformed: " + ", ".join(self.fields)
        if detail:
            msg = f"{msg}\n{detail}"
        super().__init__(msg)


class EventFileError(HandoffError):
    """事件文件不可读或不是合法 JSON（致命）。"""


class MatrixConfigError(HandoffError, ValueError):
    """矩阵声明格式错误。"""


class DeployConfigurationError(HandoffError):
    """部署阶段前置条件不满足（致命）。"""


class PayloadDecodeError(HandoffError):
    """payload 解码或 schema 校验失败；聚合阶段内视为可恢复。"""


class SerializationError(HandoffError, TypeError):
    """值无法被类型保留编码器序列化。"""
