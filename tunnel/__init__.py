"""
SOCKS5 代理隧道模块

本模块整合了代理的连接处理功能：

- BufferedStream: 会话独占的缓冲读取流（tunnel.base）
- ProxySession: 单个客户端的握手状态机与生命周期（tunnel.session）
- TunnelRelay: 客户端与目标之间的双向转发（tunnel.relay）
- ProxyServer: 监听与会话管理（tunnel.server）

使用示例：
    from tunnel import ProxyServer
    server = ProxyServer(config)
    await server.start()
"""

from .base import BufferedStream, close_writer


# 延迟导入，避免加载 tunnel.base 时连带导入配置与监控模块
def __getattr__(name):
    if name in ('ProxySession', 'SessionState'):
        from . import session
        return getattr(session, name)
    elif name == 'TunnelRelay':
        from .relay import TunnelRelay
        return TunnelRelay
    elif name == 'ProxyServer':
        from .server import ProxyServer
        return ProxyServer
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'BufferedStream',
    'close_writer',
    'ProxySession',
    'SessionState',
    'TunnelRelay',
    'ProxyServer',
]
