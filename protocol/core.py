"""
SOCKS5 代理 - 核心协议模块
定义 SOCKS5 协议（RFC 1928）与用户名/密码认证子协议（RFC 1929）的常量、
目标地址数据类、应答帧构造以及握手错误类型。

功能概述:
本模块被握手引擎和测试共享，确保服务端与客户端两侧使用相同的字节格式。

主要功能:
1. 协议常量定义 - 版本号、认证方法、命令、地址类型、应答码
2. 目标地址数据类 - 握手协商出的目的主机和端口
3. 应答帧构造 - 方法选择应答、认证状态应答、请求应答
4. 地址解码 - IPv4 / IPv6 / 域名 / 端口
5. 客户端请求编码 - 用于测试和诊断工具

请求应答格式:
┌─────┬─────┬─────┬──────┬──────────────┬──────────┐
│ VER │ REP │ RSV │ ATYP │  BND.ADDR    │ BND.PORT │
│  1  │  1  │  1  │  1   │  4 (0.0.0.0) │  2 (0)   │
└─────┴─────┴─────┴──────┴──────────────┴──────────┘

所有多字节字段使用大端序（网络字节序）。
"""

import struct
import ipaddress
from enum import IntEnum
from typing import Optional
from dataclasses import dataclass


# ============================================================================
# 协议常量
# ============================================================================

SOCKS_VERSION = 0x05
AUTH_VERSION = 0x01

MAX_FIELD_LENGTH = 255  # 单字节长度字段的上限
PORT_SIZE = 2
REQUEST_HEADER_SIZE = 4


class AuthMethod(IntEnum):
    """
    认证方法编号

    本代理只接受用户名/密码认证，其余方法仅用于识别客户端提供的列表。
    """
    NO_AUTH = 0x00
    GSSAPI = 0x01
    USERNAME_PASSWORD = 0x02
    NO_ACCEPTABLE = 0xFF


class Command(IntEnum):
    """请求命令（仅支持 CONNECT）"""
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class AddressType(IntEnum):
    """目标地址类型"""
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class Reply(IntEnum):
    """
    请求应答码

    - SUCCEEDED: 已连接到目标
    - GENERAL_FAILURE: 一般失败 / 目标连接失败
    - COMMAND_NOT_SUPPORTED: 命令不支持
    - ADDRESS_TYPE_NOT_SUPPORTED: 地址类型不支持
    """
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x05
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


class AuthStatus(IntEnum):
    SUCCESS = 0x00
    FAILURE = 0x01


# 地址类型 -> 固定长度（地址 + 端口）。域名为变长，单独处理
ADDRESS_SIZES = {
    AddressType.IPV4: 4 + PORT_SIZE,
    AddressType.IPV6: 16 + PORT_SIZE,
}


# ============================================================================
# 协商结果
# ============================================================================

@dataclass(frozen=True)
class Target:
    """
    协商出的目标地址

    每个会话只产生一次，仅用于打开一次出站连接，创建后不可修改。

    Attributes:
        host: 点分十进制 IPv4、完全展开的 IPv6 或域名字符串
        port: 目标端口（0-65535）
        address_type: 客户端请求中的地址类型
    """
    host: str
    port: int
    address_type: AddressType = AddressType.DOMAIN

    def __str__(self) -> str:
        if self.address_type == AddressType.IPV6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


# ============================================================================
# 握手错误
# ============================================================================

class Socks5Error(Exception):
    """
    握手失败基类

    Attributes:
        reply: 关闭连接前发送给客户端的应答字节，None 表示直接关闭
    """

    def __init__(self, message: str, reply: Optional[bytes] = None):
        super().__init__(message)
        self.reply = reply


class ProtocolError(Socks5Error):
    """字段取值非法或不受支持（版本号、认证方法、凭据、命令、地址类型）"""


class IncompleteStreamError(Socks5Error):
    """读取到所需字节数之前流已关闭，不发送任何应答"""

    def __init__(self, expected: int, received: int):
        super().__init__(
            f"连接在收到足够字节前关闭: 需要 {expected} 字节，实际 {received} 字节"
        )
        self.expected = expected
        self.received = received


class UpstreamError(Socks5Error):
    """无法连接到目标（拒绝、不可达、解析失败、超时）"""

    def __init__(self, message: str):
        super().__init__(message, build_reply(Reply.GENERAL_FAILURE))


# ============================================================================
# 应答帧
# ============================================================================

def build_reply(rep: int) -> bytes:
    """
    构造 10 字节请求应答帧

    绑定地址固定为 0.0.0.0:0，CONNECT 客户端不会使用该字段。
    """
    return struct.pack('>BBBB4sH', SOCKS_VERSION, rep, 0x00,
                       AddressType.IPV4, b'\x00\x00\x00\x00', 0)


def method_reply(method: int) -> bytes:
    """方法选择应答: VER + METHOD"""
    return bytes([SOCKS_VERSION, method])


def auth_reply(status: int) -> bytes:
    """认证状态应答: VER(0x01) + STATUS"""
    return bytes([AUTH_VERSION, status])


# ============================================================================
# 地址解码
# ============================================================================

def decode_ipv4(data: bytes) -> str:
    return '.'.join(str(octet) for octet in data[:4])


def decode_ipv6(data: bytes) -> str:
    """
    将 16 字节地址渲染为 8 组冒号分隔的小写十六进制

    每组去掉前导零但不做 "::" 压缩，例如 0:0:0:0:0:0:0:1。
    """
    groups = struct.unpack('>8H', data[:16])
    return ':'.join(format(group, 'x') for group in groups)


def decode_domain(data: bytes) -> str:
    return data.decode('utf-8', errors='replace')


def decode_port(data: bytes) -> int:
    return struct.unpack('>H', data[:PORT_SIZE])[0]


# ============================================================================
# 客户端请求编码
# ============================================================================

def make_greeting(methods=(AuthMethod.USERNAME_PASSWORD,), version: int = SOCKS_VERSION) -> bytes:
    """客户端问候: VER + NMETHODS + METHODS"""
    return bytes([version, len(methods)]) + bytes(methods)


def make_auth_request(username, password, version: int = AUTH_VERSION) -> bytes:
    """
    用户名/密码认证请求: VER + ULEN + UNAME + PLEN + PASSWD

    Args:
        username: str 或 bytes
        password: str 或 bytes
    """
    if isinstance(username, str):
        username = username.encode('utf-8')
    if isinstance(password, str):
        password = password.encode('utf-8')
    if len(username) > MAX_FIELD_LENGTH or len(password) > MAX_FIELD_LENGTH:
        raise ValueError("用户名或密码超过 255 字节")
    return (bytes([version, len(username)]) + username +
            bytes([len(password)]) + password)


def make_connect_request(host: str, port: int, command: int = Command.CONNECT,
                         version: int = SOCKS_VERSION) -> bytes:
    """
    CONNECT 请求: VER + CMD + RSV + ATYP + DST.ADDR + DST.PORT

    host 是 IP 字面量时使用对应的地址类型，否则按域名编码。
    """
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        encoded = host.encode('utf-8')
        if len(encoded) > MAX_FIELD_LENGTH:
            raise ValueError(f"域名过长: {len(encoded)} 字节")
        atyp = AddressType.DOMAIN
        addr_bytes = bytes([len(encoded)]) + encoded
    else:
        atyp = AddressType.IPV4 if address.version == 4 else AddressType.IPV6
        addr_bytes = address.packed

    return (bytes([version, command, 0x00, atyp]) + addr_bytes +
            struct.pack('>H', port))
