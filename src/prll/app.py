"""PRLL 命令行入口。

并行运行多个外部命令（不经过 shell），等待全部结束，汇总退出码：
- 全部成功返回 0，否则返回按参数顺序第一个非零退出码（被信号杀死为 128+N）
- SIGINT / SIGTERM: 终止所有子进程后以 130 退出

用法:
    prll "sleep 1" "ls -l" "wget -q example.org"
    prll -v --timeout 5 "make -C a" "make -C b"
"""

from __future__ import annotations

import argparse
import logging
import shlex
import signal
import sys
from collections.abc import Sequence
from typing import Any

from . import __version__
from . import debug
from .config import Config, TerminationMode, get_config
from .debug import LOG_FORMAT, vrb
from .supervisor import Supervisor

__all__ = ["build_parser", "run_commands", "main"]

logger = logging.getLogger(__name__)

INTERRUPTED_EXIT_CODE = 130  # 128 + SIGINT(2)


def _configure_logging(config: Config) -> None:
    """配置日志输出。

    LOG_DEBUG 模式输出到临时文件，否则输出到 stderr。
    """
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    logging.getLogger("prll").setLevel(log_level)


def build_parser() -> argparse.ArgumentParser:
    """构建命令行解析器。"""
    parser = argparse.ArgumentParser(
        prog="prll",
        description="Run commands in parallel and wait for all of them.",
    )
    parser.add_argument("commands", nargs="+", metavar="COMMAND",
                        help="command line, split like a POSIX shell would (no expansion)")
    parser.add_argument("-v", "--verbose", action="store_true", help="report each command's exit code")
    parser.add_argument("--debug", action="store_true", help="enable the debug channel")
    parser.add_argument("--trace", action="store_true", help="enable the enter/exit trace channel")
    parser.add_argument("--timeout", type=float, default=None,
                        help="seconds between SIGTERM and SIGKILL on interrupt")
    parser.add_argument("--forceful", action="store_true", help="SIGKILL children on interrupt")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _exit_code(returncode: int | None) -> int:
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 - returncode
    return returncode


def run_commands(
    argvs: Sequence[Sequence[str]],
    supervisor: Supervisor,
    *,
    termination: TerminationMode = TerminationMode.GRACEFUL,
    timeout: float | None = None,
) -> int:
    """启动全部命令并等待结束。

    Args:
        argvs: 每个命令的参数列表
        supervisor: 负责 fork/wait 的 Supervisor
        termination: 被中断时的终止方式
        timeout: GRACEFUL 终止时 SIGTERM 到 SIGKILL 的等待时间

    Returns:
        进程退出码
    """
    handles: list[tuple[str, int]] = []
    try:
        for argv in argvs:
            handles.append((shlex.join(argv), supervisor.spawn_external(argv)))
        supervisor.wait_all()
    except KeyboardInterrupt:
        logger.info(f"Interrupted, terminating {supervisor.registry.alive_count} child process(es)")
        if termination is TerminationMode.FORCEFUL:
            supervisor.kill_all()
        else:
            supervisor.terminate_all_with_timeout(timeout)
        return INTERRUPTED_EXIT_CODE

    status = 0
    for command, handle in handles:
        returncode = supervisor.returncode(handle)
        if returncode is None:
            logger.warning(f"Exit status of {command!r} (pid {handle}) was lost")
        code = _exit_code(returncode)
        vrb(f"[{code}] {command}")
        if code and not status:
            status = code
    return status


def _interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


def _install_interrupt_handler() -> None:
    """SIGTERM 与 Ctrl+C 一样走终止流程。"""
    signal.signal(signal.SIGTERM, _interrupt)


def main(argv: Sequence[str] | None = None) -> None:
    """主入口点。"""
    parser = build_parser()
    args = parser.parse_args(argv)
    config = get_config()

    argvs = [shlex.split(command) for command in args.commands]
    if not all(argvs):
        parser.error("empty command")

    _configure_logging(config)
    if args.debug:
        debug.debug(True)
    if args.trace:
        debug.trace(True)
    if args.verbose:
        debug.verbose(True)

    termination = TerminationMode.FORCEFUL if args.forceful else config.termination
    logger.debug(f"Starting prll: {config}")

    _install_interrupt_handler()

    with Supervisor() as supervisor:
        status = run_commands(argvs, supervisor, termination=termination, timeout=args.timeout)
    sys.exit(status)


if __name__ == "__main__":
    main()
