#!/usr/bin/env python3
"""
SOCKS5 代理服务端

协议:
1. 方法协商 - 只接受用户名/密码认证（0x02）
2. 用户名/密码认证（RFC 1929）
3. CONNECT 请求 - 支持 IPv4、域名、IPv6 地址
4. 连接目标后在客户端与目标之间双向转发

配置:
- config.yaml 的 proxy / logging 段
- 环境变量 PORT, PROXY_HOST, PROXY_USERNAME, PROXY_PASSWORD 优先
- .env 文件（--env-file）补充未设置的环境变量
"""

import argparse
import asyncio
import logging
import sys

from config import ConfigError, build_config, load_config, load_env
from logger import LoggerManager, get_logger
from tunnel.server import ProxyServer

logger = get_logger('socks5-proxy')


def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='SOCKS5 用户名/密码认证代理')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--env-file', default='.env', help='环境变量文件路径（默认: .env）')
    parser.add_argument('--host', default=None, help='监听地址（覆盖配置）')
    parser.add_argument('--port', '-p', type=int, default=None, help='监听端口（覆盖配置）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args(argv)

    log_manager = LoggerManager()
    log_manager.initialize(config_file=args.config)
    if args.debug:
        log_manager.set_level(logging.DEBUG)

    try:
        try:
            config_data = load_config(args.config)
        except FileNotFoundError:
            config_data = {}
        config = build_config(config_data, env=load_env(args.env_file))
        if args.host:
            config.host = args.host
        if args.port is not None:
            config.port = args.port
        server = ProxyServer(config)
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    except OSError as e:
        logger.error(f"无法监听 {config.host}:{config.port}: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
