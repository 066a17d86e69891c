"""CI build/deploy 结果交接运行时。

通过文件系统与环境变量，在构建矩阵的各 build job 与随后的 deploy job 之间
传递类型化结果：矩阵展开、build 输出持久化、deploy 时聚合与产物解析。
"""

from .context import ExecutionContext, Mode, parse_environment
from .matrix import MatrixJob, expand_matrix
from .runners.build import ArtifactConfig, BuildResult, run_before, run_build
from .runners.deploy import DeployAggregate, run_deploy, run_single_deploy

__all__ = [
    "__version__",
    "get_version",
    "ArtifactConfig",
    "BuildResult",
    "DeployAggregate",
    "ExecutionContext",
    "MatrixJob",
    "Mode",
    "expand_matrix",
    "parse_environment",
    "run_before",
    "run_build",
    "run_deploy",
    "run_single_deploy",
]

__version__ = "0.1.0"


def get_version() -> str:
    """返回当前包版本号。

    返回值:
        str: 版本号字符串，例如 "0.1.0"。
    副作用:
        无副作用，仅读取内置常量。
    """

    return __version__
