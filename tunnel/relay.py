"""
隧道转发模块

握手成功并连接到目标后，在客户端与目标之间全双工转发字节。
转发器不做任何分帧、检查或变换，只是一条双向管道。
"""

import asyncio
import logging
from typing import Tuple

from .base import close_writer

logger = logging.getLogger('socks5-proxy-relay')


class TunnelRelay:
    """
    双向转发器

    两个方向各有一个独立的复制协程：
    - 客户端 -> 目标
    - 目标 -> 客户端

    每个复制协程读取一块数据、写入、等待 drain() 后才读取下一块，
    读取速度不会超过对端的接收速度。任一方向结束（EOF 或出错）
    都会关闭另一侧的写入器，从而使另一个复制协程随之结束。

    Attributes:
        client_reader / client_writer: 客户端连接的读写流
        remote_reader / remote_writer: 目标连接的读写流
        buffer_size: 单次读取的最大字节数
        bytes_up: 客户端 -> 目标 已转发字节数
        bytes_down: 目标 -> 客户端 已转发字节数
    """

    def __init__(self,
                 client_reader: asyncio.StreamReader,
                 client_writer: asyncio.StreamWriter,
                 remote_reader: asyncio.StreamReader,
                 remote_writer: asyncio.StreamWriter,
                 buffer_size: int = 32768):
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.remote_reader = remote_reader
        self.remote_writer = remote_writer
        self.buffer_size = buffer_size
        self.bytes_up = 0
        self.bytes_down = 0

    async def run(self, pending: bytes = b'') -> Tuple[int, int]:
        """
        开始转发，直到两个方向都结束

        Args:
            pending: 握手阶段已从客户端读到但未被协议消费的字节，
                     在转发开始前先写给目标

        Returns:
            Tuple[int, int]: (上行字节数, 下行字节数)
        """
        if pending:
            try:
                self.remote_writer.write(pending)
                await self.remote_writer.drain()
                self.bytes_up += len(pending)
            except (ConnectionResetError, BrokenPipeError, OSError) as e:
                logger.debug(f"转发预读数据失败: {e}")
                await close_writer(self.remote_writer)
                await close_writer(self.client_writer)
                return self.bytes_up, self.bytes_down

        upstream = asyncio.create_task(
            self._pipe(self.client_reader, self.remote_writer, 'up'))
        downstream = asyncio.create_task(
            self._pipe(self.remote_reader, self.client_writer, 'down'))

        try:
            await asyncio.gather(upstream, downstream)
        finally:
            for task in (upstream, downstream):
                if not task.done():
                    task.cancel()
            await asyncio.gather(upstream, downstream, return_exceptions=True)
            await close_writer(self.remote_writer)
            await close_writer(self.client_writer)

        return self.bytes_up, self.bytes_down

    async def _pipe(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, direction: str):
        """单向复制，结束时关闭目的写入器"""
        try:
            while True:
                data = await reader.read(self.buffer_size)
                if not data:
                    logger.debug(f"[{direction}] 源端关闭")
                    break
                if writer.is_closing():
                    break
                writer.write(data)
                await writer.drain()
                if direction == 'up':
                    self.bytes_up += len(data)
                else:
                    self.bytes_down += len(data)
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            logger.debug(f"[{direction}] 转发中断: {e}")
        finally:
            await close_writer(writer)
