"""
YAMN 中继 - 配置管理模块

功能概述:
1. 中继配置数据类（不可变快照，启动时构建一次）
2. 伴随程序配置数据类
3. 地址解析（host:port / [IPv6]:port）
4. 加载 YAML 格式的配置文件，文件不存在时使用内置默认值

配置文件格式（config.yaml）:
    relay:
      proxy: 127.0.0.1:9050
      listen: 127.0.0.1:4711
      smtp_target: mailrelay.sec3.net:2525
      routes:
        dummy.tld/pubring.mix: https://www.harmsk.com/yamn/pubring.mix
    companion:
      enabled: true
      path: ./yamn
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, NamedTuple, Optional
from urllib.parse import urlsplit

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)


# ============================================================================
# 默认值
# ============================================================================

DEFAULT_PROXY = "127.0.0.1:9050"  # Tor；nym-socks5-client 使用 127.0.0.1:1080
DEFAULT_LISTEN = "127.0.0.1:4711"
DEFAULT_SMTP_TARGET = "mailrelay.sec3.net:2525"

DEFAULT_ROUTES = {
    "dummy.tld/pubring.mix": "https://www.harmsk.com/yamn/pubring.mix",
    "dummy.tld/mlist2.txt": "https://www.harmsk.com/yamn/mlist2.txt",
}


class Address(NamedTuple):
    """TCP 地址"""
    host: str
    port: int

    def __str__(self) -> str:
        if ':' in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_address(value: str, allow_zero: bool = False) -> Address:
    """
    解析 "host:port" 或 "[IPv6]:port" 形式的地址

    Args:
        value: 地址字符串
        allow_zero: 是否允许端口 0（监听地址由系统分配端口）

    Raises:
        ConfigError: 格式错误或端口超出范围
    """
    text = str(value).strip()
    if text.startswith('['):
        host, sep, rest = text[1:].partition(']')
        if not sep or not rest.startswith(':'):
            raise ConfigError(f"地址格式错误: {value!r}")
        port_str = rest[1:]
    else:
        host, sep, port_str = text.rpartition(':')
        if not sep or ':' in host:
            raise ConfigError(f"地址格式错误: {value!r}")
    if not host:
        raise ConfigError(f"地址缺少主机: {value!r}")
    try:
        port = int(port_str)
    except ValueError:
        raise ConfigError(f"端口无效: {value!r}") from None
    if not (0 if allow_zero else 1) <= port < 65536:
        raise ConfigError(f"端口超出范围: {value!r}")
    return Address(host, port)


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass(frozen=True)
class RelayConfig:
    """
    中继配置数据类

    启动时构建一次，显式传入调度器、路由器和透明中继；之后任何组件都不修改它。

    Attributes:
        proxy: SOCKS5 代理地址（所有出站流量都经过它）
        listen: 本地监听地址
        smtp_target: 非 HTTP 连接的固定上游地址
        connect_timeout: 经代理拨号上游的超时（秒）
        initial_timeout: 协议识别窗口（秒）
        io_timeout: 协议确定后的 I/O 窗口（秒）
        keepalive_interval: TCP keep-alive 探测间隔（秒）
        routes: host+path -> 绝对 URL 的只读路由表
    """
    proxy: Address = parse_address(DEFAULT_PROXY)
    listen: Address = parse_address(DEFAULT_LISTEN)
    smtp_target: Address = parse_address(DEFAULT_SMTP_TARGET)
    connect_timeout: float = 60.0
    initial_timeout: float = 10.0
    io_timeout: float = 300.0
    keepalive_interval: float = 30.0
    routes: Mapping[str, str] = field(default_factory=lambda: MappingProxyType(dict(DEFAULT_ROUTES)))

    def __post_init__(self):
        for name in ('connect_timeout', 'initial_timeout', 'io_timeout', 'keepalive_interval'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} 必须为正数")
        for key, url in self.routes.items():
            parts = urlsplit(url)
            if parts.scheme not in ('http', 'https') or not parts.netloc:
                raise ConfigError(f"路由 {key!r} 的目标不是绝对 URL: {url!r}")
        if not isinstance(self.routes, MappingProxyType):
            object.__setattr__(self, 'routes', MappingProxyType(dict(self.routes)))

    @property
    def proxy_url(self) -> str:
        """SOCKS5 代理 URL（供 python-socks / aiohttp-socks 使用）"""
        return f"socks5://{self.proxy}"

    def lookup(self, key: str) -> Optional[str]:
        """精确匹配路由表，未命中返回 None"""
        return self.routes.get(key)


def default_companion_path() -> str:
    """伴随程序默认位于本程序旁边"""
    name = 'yamn.exe' if os.name == 'nt' else 'yamn'
    return str(Path(sys.argv[0]).resolve().parent / name)


@dataclass(frozen=True)
class CompanionConfig:
    """
    伴随程序配置数据类

    Attributes:
        enabled: 是否启动伴随程序
        path: 可执行文件路径
    """
    enabled: bool = True
    path: str = field(default_factory=default_companion_path)


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    Returns:
        Dict[str, Any]: 配置数据字典，文件不存在或格式错误时返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    if not isinstance(config_data, dict):
        raise ConfigError("配置文件顶层必须是映射")
    section = config_data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"配置节 {name!r} 必须是映射")
    return section


def build_relay_config(config_data: Dict[str, Any]) -> RelayConfig:
    """
    从配置字典构建中继配置，未给出的项使用默认值

    Raises:
        ConfigError: 配置值无效
    """
    relay_conf = _section(config_data, 'relay')

    routes = relay_conf.get('routes', DEFAULT_ROUTES)
    if not isinstance(routes, dict):
        raise ConfigError("routes 必须是 host+path -> URL 的映射")

    try:
        return RelayConfig(
            proxy=parse_address(relay_conf.get('proxy', DEFAULT_PROXY)),
            listen=parse_address(relay_conf.get('listen', DEFAULT_LISTEN), allow_zero=True),
            smtp_target=parse_address(relay_conf.get('smtp_target', DEFAULT_SMTP_TARGET)),
            connect_timeout=float(relay_conf.get('connect_timeout', 60)),
            initial_timeout=float(relay_conf.get('initial_timeout', 10)),
            io_timeout=float(relay_conf.get('io_timeout', 300)),
            keepalive_interval=float(relay_conf.get('keepalive_interval', 30)),
            routes={str(k): str(v) for k, v in routes.items()},
        )
    except (TypeError, ValueError) as e:
        raise ConfigError("超时配置必须是数字", cause=e) from e


def build_companion_config(config_data: Dict[str, Any]) -> CompanionConfig:
    """从配置字典构建伴随程序配置"""
    companion_conf = _section(config_data, 'companion')
    path = companion_conf.get('path')
    return CompanionConfig(
        enabled=bool(companion_conf.get('enabled', True)),
        path=str(path) if path else default_companion_path(),
    )
