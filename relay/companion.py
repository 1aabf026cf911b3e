"""
伴随程序模块

启动 YAMN 可执行文件，转发本程序收到的命令行参数，继承标准输入输出，并把
它的 HTTP 出站流量（HTTP_PROXY）指向本中继的监听地址。
"""

import asyncio
import logging
import os
from typing import Dict, List, Mapping, Optional

from .config import Address, CompanionConfig
from .logger import log_event

logger = logging.getLogger(__name__)


def companion_env(listen: Address, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """当前环境加上指向中继的 HTTP 代理设置"""
    env = dict(os.environ if base is None else base)
    env['HTTP_PROXY'] = f"http://{listen}"
    env['NO_PROXY'] = ""
    return env


class Companion:
    """
    伴随程序

    Attributes:
        config: 伴随程序配置
        listen: 中继监听地址
        args: 转发给伴随程序的参数
    """

    def __init__(self, config: CompanionConfig, listen: Address, args: List[str]):
        self.config = config
        self.listen = listen
        self.args = list(args)

    async def run(self) -> int:
        """
        运行伴随程序直到退出

        Returns:
            int: 伴随程序的退出码；无法启动时为 1
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.config.path,
                *self.args,
                env=companion_env(self.listen),
            )
        except OSError as e:
            log_event(logger, logging.ERROR, 'companion_failed', f"伴随程序启动失败: {e}",
                      path=self.config.path)
            return 1

        log_event(logger, logging.INFO, 'companion_started', f"已启动 {self.config.path}",
                  pid=proc.pid, path=self.config.path)
        try:
            returncode = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.terminate()
            raise

        level = logging.INFO if returncode == 0 else logging.WARNING
        log_event(logger, level, 'companion_exited', f"伴随程序退出 (code={returncode})",
                  returncode=returncode)
        return returncode
