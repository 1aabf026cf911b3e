"""
YAMN 中继 - 日志管理模块

功能概述:
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 结构化事件：每条日志带事件名和字段（record.event / record.fields）
3. 会话上下文（每个 asyncio 任务独立的 session / peer）
4. 控制台彩色输出，可选的轮转日志文件
5. 配置文件和环境变量支持

事件名是稳定的接口，测试按事件而不是按日志文本断言。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_FORMAT = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - [%(context)s] - %(message)s"

# 每个会话任务各自的上下文，asyncio 创建任务时自动复制
_session_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    'relay_session_context', default={}
)


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "yamn-relay.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False


def _env_flag(name: str, default: Any) -> bool:
    return str(os.getenv(name, default)).lower() == 'true'


def load_log_config(config_data: Optional[Dict[str, Any]] = None) -> LogConfig:
    """
    从配置字典的 logging 节加载日志配置，环境变量优先

    Args:
        config_data: 已加载的配置文件内容（可选）
    """
    log_conf = (config_data or {}).get('logging') or {}
    return LogConfig(
        level=os.getenv('LOG_LEVEL', log_conf.get('level', 'INFO')),
        log_dir=os.getenv('LOG_DIR', log_conf.get('log_dir', 'logs')),
        log_file=os.getenv('LOG_FILE', log_conf.get('log_file', 'yamn-relay.log')),
        max_bytes=int(os.getenv('LOG_MAX_BYTES', log_conf.get('max_bytes', 10 * 1024 * 1024))),
        backup_count=int(os.getenv('LOG_BACKUP_COUNT', log_conf.get('backup_count', 5))),
        format_string=os.getenv('LOG_FORMAT', log_conf.get('format_string', DEFAULT_FORMAT)),
        enable_console=_env_flag('LOG_ENABLE_CONSOLE', log_conf.get('enable_console', True)),
        enable_file=_env_flag('LOG_ENABLE_FILE', log_conf.get('enable_file', False)),
    )


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    把当前任务的会话上下文和事件字段渲染到 record.context
    """

    def filter(self, record):
        parts = [f"{key}={value}" for key, value in _session_context.get().items()]
        event = getattr(record, 'event', None)
        if event:
            parts.append(f"event={event}")
            for key, value in getattr(record, 'fields', {}).items():
                parts.append(f"{key}={value}")
        record.context = " | ".join(parts) or "-"
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和配置（单例）
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.config = None
        return cls._instance

    def initialize(self, config: Optional[LogConfig] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选，默认从环境变量读取）
        """
        self.config = config or load_log_config()

        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())
        root_logger.handlers.clear()

        if self.config.enable_console:
            self._add_console_handler(root_logger)
        if self.config.enable_file:
            self._add_file_handler(root_logger)

    def _level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def _add_console_handler(self, logger: logging.Logger):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self._level())
        console_handler.addFilter(ContextFilter())
        console_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=sys.stdout.isatty()
        ))
        logger.addHandler(console_handler)

    def _add_file_handler(self, logger: logging.Logger):
        """添加文件处理器（按大小轮转）"""
        log_dir = Path(self.config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_dir / self.config.log_file,
            maxBytes=self.config.max_bytes,
            backupCount=self.config.backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(self._level())
        file_handler.addFilter(ContextFilter())
        file_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        logger.addHandler(file_handler)

    def set_debug(self):
        """切换到 DEBUG 级别"""
        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)
        for handler in root_logger.handlers:
            handler.setLevel(logging.DEBUG)


def get_logger(name: str) -> logging.Logger:
    """获取日志记录器（便捷函数）"""
    return logging.getLogger(name)


def bind_context(**kwargs) -> contextvars.Token:
    """
    为当前任务绑定会话上下文

    Returns:
        contextvars.Token: 传给 reset_context 恢复之前的上下文
    """
    merged = dict(_session_context.get())
    merged.update(kwargs)
    return _session_context.set(merged)


def reset_context(token: contextvars.Token):
    """恢复 bind_context 之前的上下文"""
    _session_context.reset(token)


def log_event(logger: logging.Logger, level: int, event: str, msg: str, **fields):
    """
    记录结构化事件

    Args:
        logger: 日志记录器
        level: 日志级别
        event: 事件名（如 route_miss）
        msg: 人类可读的日志消息
        **fields: 事件字段
    """
    logger.log(level, msg, extra={'event': event, 'fields': fields})
