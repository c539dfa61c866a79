"""PRLL 异常类。"""

from __future__ import annotations

__all__ = [
    "PrllError",
    "SpawnError",
    "SignalDeliveryError",
    "CollectionPendingError",
]


class PrllError(Exception):
    """PRLL 基础异常。"""
    pass


class SpawnError(PrllError):
    """fork 失败（如资源耗尽），不会自动重试。

    Attributes:
        label: 待启动单元的描述（函数名或命令行）
    """

    def __init__(self, label: str, message: str) -> None:
        self.label = label
        super().__init__(f"cannot spawn {label}: {message}")


class SignalDeliveryError(PrllError):
    """信号无法送达（目标进程已不存在）。

    仅在 Supervisor 内部抛出和捕获，只记录日志，不向调用方传播。

    Attributes:
        pid: 目标进程
        signum: 信号编号
    """

    def __init__(self, pid: int, signum: int, reason: str) -> None:
        self.pid = pid
        self.signum = signum
        super().__init__(f"cannot deliver signal {signum} to {pid}: {reason}")


class CollectionPendingError(PrllError):
    """在子进程被回收之前读取 pcollect 的结果。"""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        super().__init__(f"collection of process {pid} is not complete; wait() on it first")
