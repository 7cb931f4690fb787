"""
测试公共夹具

- FakeWriter: 记录写入内容的内存写入器，用于握手单元测试
- feed: 按指定块大小向 StreamReader 投递数据
- stream_pair: 基于 socketpair 的真实 asyncio 流
- restore_root_logging: 测试结束后恢复根 logger 的处理器和级别
"""

import asyncio
import logging
import socket

import pytest


class FakeWriter:
    """记录所有写入字节的 StreamWriter 替身"""

    def __init__(self, peername=('127.0.0.1', 50000)):
        self.data = bytearray()
        self.closed = False
        self.peername = peername

    def write(self, data: bytes):
        if self.closed:
            raise ConnectionResetError("writer closed")
        self.data.extend(data)

    async def drain(self):
        if self.closed:
            raise ConnectionResetError("writer closed")

    def is_closing(self) -> bool:
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        return None

    def get_extra_info(self, name, default=None):
        if name == 'peername':
            return self.peername
        return default


async def _feed(reader: asyncio.StreamReader, data: bytes, chunk_size: int = 0, eof: bool = True):
    if chunk_size <= 0:
        chunk_size = max(len(data), 1)
    for i in range(0, len(data), chunk_size):
        reader.feed_data(data[i:i + chunk_size])
        await asyncio.sleep(0)
    if eof:
        reader.feed_eof()


async def _stream_pair():
    """
    返回 ((本端 reader, 本端 writer), (对端 reader, 对端 writer))
    """
    left, right = socket.socketpair()
    local = await asyncio.open_connection(sock=left)
    peer = await asyncio.open_connection(sock=right)
    return local, peer


@pytest.fixture
def fake_writer():
    return FakeWriter


@pytest.fixture
def feed():
    return _feed


@pytest.fixture
def stream_pair():
    return _stream_pair


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        if handler not in saved_handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in saved_handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(saved_level)
