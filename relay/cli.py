#!/usr/bin/env python3
"""
YAMN 中继 - 命令行入口

启动本地中继，然后启动伴随程序（YAMN）并等待它退出。本程序不认识的参数
原样转发给伴随程序；`--` 之后的所有参数也一样。

    yamn-relay -c config.yaml -- --mail message.txt
    yamn-relay --no-companion
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .companion import Companion
from .config import (
    CompanionConfig, RelayConfig, build_companion_config, build_relay_config, load_config
)
from .errors import ConfigError
from .logger import LoggerManager, get_logger, load_log_config, log_event
from .server import RelayServer

logger = get_logger('yamn-relay')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='yamn-relay',
        description='YAMN 本地中继：HTTP 和 SMTP 流量经 SOCKS5 代理转发',
    )
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    parser.add_argument('--no-companion', action='store_true', help='只运行中继，不启动伴随程序')
    return parser


def split_args(argv: Optional[List[str]] = None):
    """解析本程序的参数，返回 (args, 伴随程序参数)"""
    args, rest = build_parser().parse_known_args(argv)
    if rest and rest[0] == '--':
        rest = rest[1:]
    return args, rest


async def run_relay(relay_config: RelayConfig, companion_config: CompanionConfig,
                    companion_args: List[str], serve_only: bool = False) -> int:
    """
    运行中继，并在启用时运行伴随程序

    Returns:
        int: 进程退出码（伴随程序的退出码，绑定失败为 1）
    """
    server = RelayServer(relay_config)
    try:
        await server.start()
    except OSError as e:
        log_event(logger, logging.CRITICAL, 'bind_failed', f"代理错误: {e}",
                  address=str(relay_config.listen))
        return 1

    if serve_only or not companion_config.enabled:
        await server.serve_forever()
        return 0

    serve_task = asyncio.create_task(server.serve_forever())
    try:
        companion = Companion(companion_config, server.address, companion_args)
        return await companion.run()
    finally:
        serve_task.cancel()
        await asyncio.gather(serve_task, return_exceptions=True)


def main(argv: Optional[List[str]] = None) -> int:
    """
    主函数 - 解析命令行参数并启动中继

    命令行参数:
        --config, -c: 配置文件路径 (默认: config.yaml，不存在时使用内置默认值)
        --debug, -d: 启用调试模式
        --no-companion: 只运行中继
    """
    args, companion_args = split_args(argv)

    config_data = load_config(args.config)

    manager = LoggerManager()
    manager.initialize(load_log_config(config_data))
    if args.debug:
        manager.set_debug()

    logger.info("=== YAMN 中继启动 ===")

    try:
        relay_config = build_relay_config(config_data)
        companion_config = build_companion_config(config_data)
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    logger.info(f"SOCKS5 代理: {relay_config.proxy}, SMTP 目标: {relay_config.smtp_target}, "
                f"HTTP 路由: {len(relay_config.routes)} 条")

    try:
        return asyncio.run(run_relay(relay_config, companion_config, companion_args,
                                     serve_only=args.no_companion))
    except KeyboardInterrupt:
        logger.info("中继已停止")
        return 0


if __name__ == '__main__':
    sys.exit(main())
