"""
隧道基础组件

本模块定义了握手引擎和转发器共享的流操作，包括：
- 会话独占的读取缓冲区（按精确字节数消费）
- 带超时的写入器关闭
- TCP_NODELAY 设置
"""

import asyncio
import logging
import socket
from typing import Optional

from protocol import IncompleteStreamError

logger = logging.getLogger('socks5-proxy-base')

CLOSE_TIMEOUT = 5.0


class BufferedStream:
    """
    会话独占的缓冲读取流

    从底层 StreamReader 读取"当前可用"的数据追加到 buffer，
    每一步只从 buffer 前端取走该步需要的字节数，多余的数据留给下一步。
    握手结束后 buffer 中剩余的字节（客户端提前发送的应用数据）
    由 take_pending() 取出并首先转发给目标。

    Attributes:
        reader: 异步流读取器
        buffer: 已接收但尚未被协议解析消费的字节
        chunk_size: 单次从底层读取的最大字节数
        received: 从底层读取的总字节数
    """

    def __init__(self, reader: asyncio.StreamReader, chunk_size: int = 4096):
        self.reader = reader
        self.buffer = bytearray()
        self.chunk_size = chunk_size
        self.received = 0

    async def read_exact(self, n: int) -> bytes:
        """
        读取恰好 n 个字节

        数据不足时挂起当前协程直到收到足够数据。

        Raises:
            IncompleteStreamError: 收到 n 字节之前流已结束
        """
        while len(self.buffer) < n:
            chunk = await self.reader.read(self.chunk_size)
            if not chunk:
                raise IncompleteStreamError(n, len(self.buffer))
            self.buffer.extend(chunk)
            self.received += len(chunk)

        data = bytes(self.buffer[:n])
        del self.buffer[:n]
        return data

    async def read_byte(self) -> int:
        return (await self.read_exact(1))[0]

    def take_pending(self) -> bytes:
        """取出并清空缓冲区中剩余的字节"""
        pending = bytes(self.buffer)
        self.buffer.clear()
        return pending


def peer_string(writer: asyncio.StreamWriter) -> str:
    peer = writer.get_extra_info('peername')
    if not peer:
        return "unknown"
    return f"{peer[0]}:{peer[1]}"


def set_no_delay(writer: asyncio.StreamWriter):
    """在底层 TCP 套接字上启用 TCP_NODELAY"""
    sock = writer.get_extra_info('socket')
    if sock is None or sock.family not in (socket.AF_INET, socket.AF_INET6):
        return
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError as e:
        logger.debug(f"设置 TCP_NODELAY 失败: {e}")


async def close_writer(writer: Optional[asyncio.StreamWriter], timeout: float = CLOSE_TIMEOUT):
    """
    关闭写入器并等待底层连接关闭

    对端不读取数据导致发送缓冲区无法清空时，超时后强制中止连接，
    保证不会无限期停留在半关闭状态。
    """
    if writer is None:
        return
    try:
        writer.close()
        await asyncio.wait_for(writer.wait_closed(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("等待连接关闭超时，强制中止")
        transport = getattr(writer, 'transport', None)
        if transport is not None:
            transport.abort()
    except (ConnectionResetError, BrokenPipeError, OSError):
        pass  # 连接已断开
