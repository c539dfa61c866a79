"""PRLL 环境变量配置管理。

环境变量:
    PRLL_DEBUG: 调试通道
        - true/1/yes = 开启 (同时隐含 trace 与 verbose)
        - false/0/no = 关闭 (默认)

    PRLL_TRACE: 函数进入/退出跟踪通道
        - true/1/yes = 开启
        - false/0/no = 关闭 (默认)

    PRLL_VERBOSE: 详细输出通道
        - true/1/yes = 开启
        - false/0/no = 关闭 (默认)

    PRLL_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    PRLL_REAP_ON_SIGCHLD: 是否安装 SIGCHLD 处理器
        - true/1/yes = 安装 (默认)
        - false/0/no = 不安装 (仅依赖 waitpid)

    PRLL_TERM_TIMEOUT: terminate_with_timeout 的优雅退出等待时间（秒）
        - 默认 2.0 秒，限制在 0.1-60 秒

    PRLL_TERMINATION: 命令行中断时的终止方式
        - graceful = SIGTERM (默认)
        - forceful = SIGKILL
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "TerminationMode", "load_config", "get_config", "reload_config"]

DEFAULT_TERM_TIMEOUT = 2.0


class TerminationMode(Enum):
    """命令行中断时的终止方式。

    - GRACEFUL: 发送 SIGTERM，超时后再 SIGKILL
    - FORCEFUL: 直接 SIGKILL
    """

    GRACEFUL = "graceful"
    FORCEFUL = "forceful"

    @classmethod
    def from_string(cls, value: str) -> "TerminationMode":
        """从字符串解析模式。

        Args:
            value: 模式字符串 (graceful/forceful)

        Returns:
            对应的枚举值，无效值返回 GRACEFUL
        """
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.GRACEFUL


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_term_timeout(value: str | None) -> float:
    """解析优雅退出等待时间环境变量。"""
    if not value:
        return DEFAULT_TERM_TIMEOUT
    try:
        timeout = float(value)
        return max(0.1, min(timeout, 60.0))
    except ValueError:
        return DEFAULT_TERM_TIMEOUT


def _parse_termination(value: str | None) -> TerminationMode:
    """解析终止方式环境变量。"""
    if not value:
        return TerminationMode.GRACEFUL
    return TerminationMode.from_string(value)


@dataclass
class Config:
    """PRLL 配置。

    Attributes:
        debug: 调试通道开关
        trace: 跟踪通道开关
        verbose: 详细输出通道开关
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        reap_on_sigchld: 是否安装 SIGCHLD 处理器
        term_timeout: 优雅退出等待时间（秒）
        termination: 命令行中断时的终止方式
    """

    debug: bool = False
    trace: bool = False
    verbose: bool = False
    log_debug: bool = False
    log_file: str | None = None
    reap_on_sigchld: bool = True
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    termination: TerminationMode = TerminationMode.GRACEFUL

    def __repr__(self) -> str:
        return (
            f"Config(debug={self.debug}, "
            f"trace={self.trace}, "
            f"verbose={self.verbose}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"reap_on_sigchld={self.reap_on_sigchld}, "
            f"term_timeout={self.term_timeout}, "
            f"termination={self.termination.value})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "prll"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"prll_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("PRLL_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        debug=_parse_bool(os.environ.get("PRLL_DEBUG"), default=False),
        trace=_parse_bool(os.environ.get("PRLL_TRACE"), default=False),
        verbose=_parse_bool(os.environ.get("PRLL_VERBOSE"), default=False),
        log_debug=log_debug,
        log_file=log_file,
        reap_on_sigchld=_parse_bool(os.environ.get("PRLL_REAP_ON_SIGCHLD"), default=True),
        term_timeout=_parse_term_timeout(os.environ.get("PRLL_TERM_TIMEOUT")),
        termination=_parse_termination(os.environ.get("PRLL_TERMINATION")),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
