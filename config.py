"""
SOCKS5 代理 - 配置管理模块
加载 YAML 配置文件并合并环境变量，生成代理配置和认证凭据。

功能概述:
本模块提供了配置管理功能，包括：
1. 代理服务配置数据类
2. 认证凭据数据类（只读，所有会话共享）
3. YAML 配置文件加载
4. 环境变量覆盖（PORT, PROXY_HOST, PROXY_USERNAME, PROXY_PASSWORD）
5. 配置校验

配置文件格式:
- config.yaml，代理配置位于 proxy 段，日志配置位于 logging 段
- 使用 YAML 格式，支持 Unicode
"""

import hmac
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import dotenv_values

logger = logging.getLogger(__name__)

DEFAULT_PORT = 1080


class ConfigError(ValueError):
    """配置缺失或非法"""


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass(frozen=True)
class Credentials:
    """
    认证凭据

    进程启动时创建一次，之后只读，被所有会话按引用共享。

    Attributes:
        username: 用户名
        password: 密码
    """
    username: str
    password: str

    def matches(self, username: bytes, password: bytes) -> bool:
        """
        按字节精确比较客户端提交的用户名和密码

        Args:
            username: 客户端发送的原始用户名字节
            password: 客户端发送的原始密码字节

        Returns:
            bool: 两者都相同返回 True
        """
        user_ok = hmac.compare_digest(self.username.encode('utf-8'), username)
        pass_ok = hmac.compare_digest(self.password.encode('utf-8'), password)
        return user_ok and pass_ok


@dataclass
class ProxyConfig:
    """
    代理配置数据类

    Attributes:
        host: 监听地址（默认: "0.0.0.0"）
        port: 监听端口（默认: 1080，0 表示随机端口）
        username: 认证用户名（必填）
        password: 认证密码（必填）
        handshake_timeout: 整个握手阶段的超时（秒，0 或 None 表示不限制）
        connect_timeout: 连接目标的超时（秒）
        buffer_size: 转发时单次读取的最大字节数
        no_delay: 是否在客户端和目标连接上启用 TCP_NODELAY
        stats_interval: 资源统计日志间隔（秒，0 表示关闭）
    """
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    handshake_timeout: Optional[float] = 60.0
    connect_timeout: float = 30.0
    buffer_size: int = 32768
    no_delay: bool = True
    stats_interval: int = 0

    def validate(self):
        """
        校验配置

        Raises:
            ConfigError: 缺少凭据、端口越界、凭据过长或缓冲区大小非法
        """
        if not self.username or self.password is None or self.password == "":
            raise ConfigError("未配置用户名或密码（PROXY_USERNAME / PROXY_PASSWORD）")
        if len(self.username.encode('utf-8')) > 255 or len(self.password.encode('utf-8')) > 255:
            raise ConfigError("用户名和密码编码后不能超过 255 字节")
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"无效的端口号: {self.port}")
        if self.buffer_size <= 0:
            raise ConfigError(f"无效的缓冲区大小: {self.buffer_size}")

    def credentials(self) -> Credentials:
        """校验配置并返回只读凭据"""
        self.validate()
        return Credentials(self.username, self.password)

    @property
    def effective_handshake_timeout(self) -> Optional[float]:
        if not self.handshake_timeout:
            return None
        return float(self.handshake_timeout)


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(path: str) -> Dict[str, Any]:
    """
    加载 YAML 配置文件

    Args:
        path: 配置文件路径

    Returns:
        dict: 配置字典，空文件返回空字典

    Raises:
        FileNotFoundError: 文件不存在
        ConfigError: YAML 格式错误
    """
    with open(path, 'r', encoding='utf-8') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"配置文件 {path} 格式错误: {e}") from e


def load_env(env_file: Optional[str] = '.env',
             environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    合并 .env 文件与进程环境变量

    进程环境变量优先，.env 只补充未设置的变量；文件不存在时忽略。
    不修改 os.environ。

    Args:
        env_file: .env 文件路径，None 表示不读取
        environ: 进程环境变量（默认: os.environ）

    Returns:
        dict: 供 build_config 使用的环境变量映射
    """
    values: Dict[str, str] = {}
    if env_file and os.path.isfile(env_file):
        values.update(
            (key, value) for key, value in dotenv_values(env_file).items() if value is not None
        )
        logger.debug(f"已加载环境变量文件 {env_file}")
    values.update(os.environ if environ is None else environ)
    return values


def _parse_port(value, source: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{source} 不是有效的端口号: {value!r}")


def _as_text(value) -> Optional[str]:
    # YAML 会把纯数字密码解析成 int
    return None if value is None else str(value)


def build_config(config_data: Optional[Dict[str, Any]] = None,
                 env: Optional[Mapping[str, str]] = None) -> ProxyConfig:
    """
    根据配置字典和环境变量生成代理配置

    环境变量优先于配置文件：
    - PORT: 监听端口
    - PROXY_HOST: 监听地址
    - PROXY_USERNAME / PROXY_PASSWORD: 认证凭据

    Args:
        config_data: load_config 返回的配置字典
        env: 环境变量映射（默认: os.environ）

    Returns:
        ProxyConfig: 代理配置对象（未校验）
    """
    config_data = config_data or {}
    env = os.environ if env is None else env
    proxy_conf = config_data.get('proxy') or {}

    port = env.get('PORT') or proxy_conf.get('port')
    port = _parse_port(port, 'PORT') if port not in (None, '') else DEFAULT_PORT

    return ProxyConfig(
        host=env.get('PROXY_HOST') or proxy_conf.get('host', '0.0.0.0'),
        port=port,
        username=_as_text(env.get('PROXY_USERNAME', proxy_conf.get('username'))),
        password=_as_text(env.get('PROXY_PASSWORD', proxy_conf.get('password'))),
        handshake_timeout=proxy_conf.get('handshake_timeout', 60.0),
        connect_timeout=float(proxy_conf.get('connect_timeout', 30.0)),
        buffer_size=int(proxy_conf.get('buffer_size', 32768)),
        no_delay=bool(proxy_conf.get('no_delay', True)),
        stats_interval=int(proxy_conf.get('stats_interval', 0)),
    )
