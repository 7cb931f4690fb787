"""
SOCKS5 协议包

本包提供了代理握手所需的协议定义，包括：
- 协议常量和枚举（认证方法、命令、地址类型、应答码）
- 协商目标地址数据类
- 应答帧构造与地址解码函数
- 握手错误类型

使用示例：
    from protocol import build_reply, Reply, make_connect_request

    # 构造失败应答
    data = build_reply(Reply.GENERAL_FAILURE)

    # 构造客户端 CONNECT 请求
    request = make_connect_request('example.com', 443)
"""

from .core import (
    # 协议常量
    SOCKS_VERSION,
    AUTH_VERSION,
    MAX_FIELD_LENGTH,
    PORT_SIZE,
    REQUEST_HEADER_SIZE,
    ADDRESS_SIZES,

    # 枚举
    AuthMethod,
    Command,
    AddressType,
    Reply,
    AuthStatus,

    # 数据类
    Target,

    # 错误类型
    Socks5Error,
    ProtocolError,
    IncompleteStreamError,
    UpstreamError,

    # 应答与解码
    build_reply,
    method_reply,
    auth_reply,
    decode_ipv4,
    decode_ipv6,
    decode_domain,
    decode_port,

    # 客户端编码
    make_greeting,
    make_auth_request,
    make_connect_request,
)
