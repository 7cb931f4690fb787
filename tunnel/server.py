"""
SOCKS5 代理服务器模块 - 服务器生命周期管理

此模块包含 ProxyServer 类，负责监听端口、接受客户端连接，
并为每个连接创建独立的 ProxySession 协程。

主要组件:
- ProxyServer: 代理服务器类，管理监听器、会话任务和资源统计

使用示例:
    >>> config = ProxyConfig(port=1080, username='user', password='pass')
    >>> server = ProxyServer(config)
    >>> asyncio.run(server.start())
"""

import asyncio
import itertools
from typing import Optional, Set, Tuple

from config import ProxyConfig
from logger import get_logger, log_exception
from resource_monitor import ResourceMonitor

from .session import OpenConnection, ProxySession

logger = get_logger('socks5-proxy-server')

# 服务器常驻运行，统计历史只保留最近若干次
STATS_HISTORY_SIZE = 60


class ProxyServer:
    """
    代理服务器类 - 管理服务器生命周期和客户端连接

    工作流程:
    1. 校验配置并生成只读凭据
    2. 启动异步 TCP 服务器
    3. 为每个客户端连接创建独立的会话协程
    4. 停止时关闭监听器并取消所有存活会话

    单个会话的任何异常都只记录日志，不会影响其它会话或接受循环。

    Attributes:
        config: ProxyConfig，代理配置
        credentials: Credentials，所有会话共享的只读凭据
        sessions: 存活的会话任务集合
        monitor: 资源统计启用后的 ResourceMonitor
    """

    def __init__(self, config: ProxyConfig, open_connection: Optional[OpenConnection] = None):
        self.config = config
        self.credentials = config.credentials()
        self.open_connection = open_connection
        self.sessions: Set[asyncio.Task] = set()
        self._server: Optional[asyncio.AbstractServer] = None
        self._stats_task: Optional[asyncio.Task] = None
        self.monitor: Optional[ResourceMonitor] = None
        self._session_ids = itertools.count(1)

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """处理客户端连接"""
        session = ProxySession(
            reader, writer, self.credentials, self.config,
            session_id=next(self._session_ids),
            open_connection=self.open_connection,
        )
        task = asyncio.current_task()
        self.sessions.add(task)
        try:
            await session.run()
        except Exception as e:
            log_exception(logger, f"会话 {session.session_id} 意外错误: {e}")
        finally:
            self.sessions.discard(task)

    async def listen(self) -> asyncio.AbstractServer:
        """绑定监听端口并开始接受连接"""
        self._server = await asyncio.start_server(
            self.handle_client,
            self.config.host,
            self.config.port,
            reuse_address=True,
        )
        return self._server

    @property
    def address(self) -> Tuple[str, int]:
        """实际绑定的 (host, port)，port=0 时为系统分配的端口"""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("服务器尚未启动")
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    async def start(self):
        """启动服务器并一直运行"""
        server = await self.listen()
        host, port = self.address
        logger.info(f"SOCKS5 代理监听 {host}:{port}")
        logger.info(f"认证用户: \"{self.credentials.username}\"")

        if self.config.stats_interval > 0:
            self._stats_task = asyncio.create_task(self._stats_loop())

        try:
            await server.serve_forever()
        finally:
            await self.stop()

    async def stop(self):
        """关闭监听器并取消所有存活会话"""
        if self._stats_task is not None:
            self._stats_task.cancel()
            await asyncio.gather(self._stats_task, return_exceptions=True)
            self._stats_task = None

        server, self._server = self._server, None
        if server is not None:
            server.close()

        # 先取消会话，wait_closed 会等待所有连接处理协程结束
        sessions = [task for task in self.sessions if task is not asyncio.current_task()]
        for task in sessions:
            task.cancel()
        if sessions:
            await asyncio.gather(*sessions, return_exceptions=True)

        if server is not None:
            await server.wait_closed()
        logger.info("代理服务器已停止")

    async def _stats_loop(self):
        """按 stats_interval 周期记录进程资源统计"""
        self.monitor = ResourceMonitor(history_size=STATS_HISTORY_SIZE)
        while True:
            await asyncio.sleep(self.config.stats_interval)
            result = self.monitor.monitor_once(active_sessions=len(self.sessions))
            logger.info(
                f"资源统计: 会话 {result['active_sessions']}, "
                f"内存 {result['memory_mb']:.2f} MB, CPU {result['cpu_percent']:.1f}%, "
                f"文件描述符 {result['num_fds']}, 连接 {result['connections']}"
            )
            for warning in result['warnings']:
                logger.warning(f"资源告警: {warning}")
