"""prll - 并行执行与生成器函数工具。

- Supervisor: fork 子进程（Python 可调用对象或外部程序），等待/终止单个或全部
- collect / pcollect / as_collector: 把基于回调的生成器函数转换为结果列表

环境变量:
    PRLL_DEBUG / PRLL_TRACE / PRLL_VERBOSE: 诊断通道 (默认关闭)
    PRLL_TERM_TIMEOUT: 优雅终止等待时间 (默认 2.0s)

用法:
    prll "cmd1 arg" "cmd2 arg"
"""

__version__ = "0.1.0"

from .errors import CollectionPendingError, PrllError, SignalDeliveryError, SpawnError
from .generator import PendingCollection, as_collector, collect, pcollect
from .supervisor import Liveness, ProcessEntry, ProcessRegistry, Supervisor, Termination

__all__ = [
    "__version__",
    "Supervisor",
    "ProcessRegistry",
    "ProcessEntry",
    "Liveness",
    "Termination",
    "collect",
    "pcollect",
    "as_collector",
    "PendingCollection",
    "PrllError",
    "SpawnError",
    "SignalDeliveryError",
    "CollectionPendingError",
]
