"""
代理会话模块

本模块定义了 ProxySession 类，负责处理一个客户端连接从接受到关闭的完整生命周期：
SOCKS5 方法协商、用户名/密码认证、CONNECT 请求解析、连接目标以及双向转发。
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from config import Credentials, ProxyConfig
from logger import add_context, reset_context
from protocol import (
    SOCKS_VERSION,
    AUTH_VERSION,
    REQUEST_HEADER_SIZE,
    ADDRESS_SIZES,
    PORT_SIZE,
    AuthMethod,
    AuthStatus,
    Command,
    AddressType,
    Reply,
    Target,
    Socks5Error,
    ProtocolError,
    IncompleteStreamError,
    UpstreamError,
    build_reply,
    method_reply,
    auth_reply,
    decode_ipv4,
    decode_ipv6,
    decode_domain,
    decode_port,
)

from .base import BufferedStream, close_writer, peer_string, set_no_delay
from .relay import TunnelRelay

logger = logging.getLogger('socks5-proxy-session')

OpenConnection = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class SessionState(Enum):
    """会话状态，严格按顺序推进，任何一步失败即终止"""
    GREETING = "greeting"
    AUTH = "auth"
    REQUEST = "request"
    ADDRESS = "address"
    CONNECTING = "connecting"
    RELAY = "relay"
    CLOSED = "closed"


class ProxySession:
    """
    代理会话类 - 处理单个客户端的 SOCKS5 连接

    工作流程:
    1. GREETING: 读取版本号和认证方法列表，选择用户名/密码认证
    2. AUTH: 校验用户名和密码
    3. REQUEST: 读取请求头，只接受 CONNECT
    4. ADDRESS: 按地址类型解析目标地址和端口
    5. CONNECTING: 连接目标
    6. RELAY: 发送成功应答，转发预读数据，进入双向转发
    7. CLOSED: 关闭客户端和目标连接

    每一次"读取 N 字节"都是一个挂起点，只挂起本会话的协程。
    会话之间除只读凭据外不共享任何状态。

    Attributes:
        stream: 会话独占的缓冲读取流
        writer: 向客户端写入的流
        credentials: 只读认证凭据
        config: 代理配置
        state: 当前会话状态
        client_id: 客户端地址 "ip:port"（仅用于日志）
        session_id: 会话编号（仅用于日志）
        target: 协商出的目标地址
        username: 认证通过的用户名
    """

    def __init__(self,
                 reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter,
                 credentials: Credentials,
                 config: Optional[ProxyConfig] = None,
                 session_id: int = 0,
                 open_connection: Optional[OpenConnection] = None):
        self.config = config or ProxyConfig()
        self.reader = reader
        self.writer = writer
        self.stream = BufferedStream(reader)
        self.credentials = credentials
        self.session_id = session_id
        self.open_connection = open_connection or asyncio.open_connection
        self.state = SessionState.GREETING
        self.client_id = peer_string(writer)
        self.address_type: Optional[int] = None
        self.target: Optional[Target] = None
        self.username: Optional[str] = None

    async def run(self):
        """主会话处理器，返回前保证客户端和目标连接都已关闭"""
        token = add_context(client=self.client_id, session_id=self.session_id)
        logger.info(f"客户端已连接: {self.client_id}")

        remote_writer = None
        try:
            if self.config.no_delay:
                set_no_delay(self.writer)

            target = await asyncio.wait_for(
                self.handshake(), timeout=self.config.effective_handshake_timeout)

            remote_reader, remote_writer = await self.connect(target)
            await self._relay(remote_reader, remote_writer)

        except asyncio.TimeoutError:
            logger.warning(f"握手超时: {self.client_id} (状态 {self.state.value})")
        except IncompleteStreamError as e:
            logger.debug(f"握手中断: {e}")
        except Socks5Error as e:
            if isinstance(e, UpstreamError):
                logger.error(f"[REMOTE ERROR] {self.client_id} -> {self.target}: {e}")
            else:
                logger.warning(f"握手失败 ({self.state.value}): {e}")
            if e.reply is not None:
                await self._send_quietly(e.reply)
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            logger.debug(f"连接错误: {e}")
        finally:
            self.state = SessionState.CLOSED
            await close_writer(remote_writer)
            await close_writer(self.writer)
            logger.info(f"会话结束: {self.client_id}")
            reset_context(token)

    # ------------------------------------------------------------------
    # 握手
    # ------------------------------------------------------------------

    async def handshake(self) -> Target:
        """
        执行完整握手

        Returns:
            Target: 协商出的目标地址

        Raises:
            ProtocolError: 字段校验失败（reply 为需要发送的应答，可能为 None）
            IncompleteStreamError: 客户端提前关闭连接
        """
        await self._negotiate_method()
        await self._authenticate()
        await self._read_request()
        self.target = await self._read_address()
        logger.info(f"[CONNECT] {self.client_id} -> {self.target}")
        return self.target

    async def _negotiate_method(self):
        version, nmethods = await self.stream.read_exact(2)
        if version != SOCKS_VERSION:
            raise ProtocolError(f"无效的 SOCKS 版本: {version}")

        methods = await self.stream.read_exact(nmethods)
        if AuthMethod.USERNAME_PASSWORD not in methods:
            raise ProtocolError("客户端未提供用户名/密码认证方法",
                                method_reply(AuthMethod.NO_ACCEPTABLE))

        await self._send(method_reply(AuthMethod.USERNAME_PASSWORD))
        self.state = SessionState.AUTH

    async def _authenticate(self):
        """RFC 1929: VER(0x01) + ULEN + UNAME + PLEN + PASSWD"""
        version, ulen = await self.stream.read_exact(2)
        if version != AUTH_VERSION:
            raise ProtocolError(f"无效的认证版本: {version}")

        username = await self.stream.read_exact(ulen)
        plen = await self.stream.read_byte()
        password = await self.stream.read_exact(plen)

        if not self.credentials.matches(username, password):
            raise ProtocolError(f"[AUTH FAIL] 用户 \"{decode_domain(username)}\" 认证失败",
                                auth_reply(AuthStatus.FAILURE))

        self.username = decode_domain(username)
        await self._send(auth_reply(AuthStatus.SUCCESS))
        logger.info(f"[AUTH OK] {self.client_id} as \"{self.username}\"")
        self.state = SessionState.REQUEST

    async def _read_request(self):
        version, command, _, address_type = await self.stream.read_exact(REQUEST_HEADER_SIZE)
        if version != SOCKS_VERSION:
            raise ProtocolError(f"无效的请求版本: {version}")
        if command != Command.CONNECT:
            raise ProtocolError(f"不支持的命令: {command}",
                                build_reply(Reply.COMMAND_NOT_SUPPORTED))

        self.address_type = address_type
        self.state = SessionState.ADDRESS

    async def _read_address(self) -> Target:
        address_type = self.address_type

        if address_type == AddressType.IPV4:
            data = await self.stream.read_exact(ADDRESS_SIZES[AddressType.IPV4])
            host = decode_ipv4(data)
        elif address_type == AddressType.DOMAIN:
            length = await self.stream.read_byte()
            data = await self.stream.read_exact(length + PORT_SIZE)
            host = decode_domain(data[:length])
        elif address_type == AddressType.IPV6:
            data = await self.stream.read_exact(ADDRESS_SIZES[AddressType.IPV6])
            host = decode_ipv6(data)
        else:
            raise ProtocolError(f"不支持的地址类型: {address_type}",
                                build_reply(Reply.ADDRESS_TYPE_NOT_SUPPORTED))

        port = decode_port(data[-PORT_SIZE:])
        return Target(host, port, AddressType(address_type))

    # ------------------------------------------------------------------
    # 连接目标与转发
    # ------------------------------------------------------------------

    async def connect(self, target: Target) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        连接协商出的目标

        Raises:
            UpstreamError: 连接被拒绝、不可达、域名解析失败或超时
        """
        self.state = SessionState.CONNECTING
        if not target.host:
            raise UpstreamError("目标主机为空")

        try:
            remote_reader, remote_writer = await asyncio.wait_for(
                self.open_connection(target.host, target.port),
                timeout=self.config.connect_timeout
            )
        except asyncio.TimeoutError:
            raise UpstreamError(f"连接超时 ({self.config.connect_timeout}s)")
        except (OSError, UnicodeError, ValueError) as e:
            # getaddrinfo 失败抛 socket.gaierror（OSError 子类），非法 IDNA 域名抛 UnicodeError
            raise UpstreamError(str(e) or e.__class__.__name__)

        if self.config.no_delay:
            set_no_delay(remote_writer)
        return remote_reader, remote_writer

    async def _relay(self, remote_reader: asyncio.StreamReader, remote_writer: asyncio.StreamWriter):
        await self._send(build_reply(Reply.SUCCEEDED))
        self.state = SessionState.RELAY
        logger.debug(f"已连接 {self.target}，开始转发")

        relay = TunnelRelay(self.reader, self.writer, remote_reader, remote_writer,
                            buffer_size=self.config.buffer_size)
        bytes_up, bytes_down = await relay.run(self.stream.take_pending())
        logger.info(f"隧道关闭 {self.target}: 上行 {bytes_up} 字节, 下行 {bytes_down} 字节")

    async def _send(self, data: bytes):
        self.writer.write(data)
        await self.writer.drain()

    async def _send_quietly(self, data: bytes):
        """发送错误应答，连接已不可写时放弃"""
        if self.writer.is_closing():
            return
        try:
            await self._send(data)
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            logger.debug(f"发送应答失败: {e}")
