"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Callable, Iterator

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from prll import debug  # noqa: E402
from prll.supervisor import Supervisor  # noqa: E402


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """轮询直到 predicate 为真或超时。"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def reset_debug_flags() -> Iterator[None]:
    """每个测试前后恢复诊断通道开关。"""
    debug.reset()
    yield
    debug.reset()


@pytest.fixture
def supervisor() -> Iterator[Supervisor]:
    """Supervisor 实例；测试结束时杀掉残留子进程。"""
    sup = Supervisor(term_timeout=0.5)
    try:
        yield sup
    finally:
        sup.kill_all()
        sup.close()
