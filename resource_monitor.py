#!/usr/bin/env python3
"""
资源监控工具 - 监控 SOCKS5 代理进程的资源使用情况

功能:
1. 采集进程的内存、CPU、线程、文件描述符和连接数
2. 按阈值产生告警（连接或文件描述符持续增长通常意味着会话未被正确关闭）
3. 生成诊断报告

既可以被代理服务器内部周期调用（stats_interval），
也可以作为独立命令行工具从外部观察正在运行的代理进程。
"""

import argparse
import asyncio
import sys
import time
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional

import psutil


DEFAULT_THRESHOLDS = {
    'memory_mb': 500,       # 内存阈值: 500MB
    'cpu_percent': 80,      # CPU 阈值: 80%
    'connections': 1000,    # 连接数阈值
    'num_fds': 2000,        # 文件描述符阈值
}


class ResourceMonitor:
    """
    进程资源监控器

    参数:
        pid: 要监控的进程 ID，None 表示当前进程
        thresholds: 告警阈值，缺省使用 DEFAULT_THRESHOLDS
        history_size: 保留的历史记录条数，None 表示不限制（仅用于有限时长的命令行监控）
    """

    def __init__(self, pid: Optional[int] = None, thresholds: Optional[Dict] = None,
                 history_size: Optional[int] = None):
        self.process = psutil.Process(pid)
        self.thresholds = dict(DEFAULT_THRESHOLDS)
        if thresholds:
            self.thresholds.update(thresholds)
        self.history: Deque[Dict] = deque(maxlen=history_size)
        self.check_count = 0

    @staticmethod
    def find_processes(pattern: str) -> List[psutil.Process]:
        """按命令行子串查找进程"""
        processes = []
        for proc in psutil.process_iter(['pid', 'cmdline']):
            try:
                cmdline = ' '.join(proc.info['cmdline'] or [])
                if pattern in cmdline and proc.pid != psutil.Process().pid:
                    processes.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return processes

    def get_process_stats(self) -> Optional[Dict]:
        """
        获取进程统计信息

        返回:
            Dict: 统计信息，进程已退出或无权限时返回 None
        """
        proc = self.process
        try:
            with proc.oneshot():
                memory_info = proc.memory_info()
                num_fds = proc.num_fds() if hasattr(proc, 'num_fds') else 0
                # psutil 6.0 起 connections() 更名为 net_connections()
                connections = getattr(proc, 'net_connections', None) or proc.connections
                return {
                    'pid': proc.pid,
                    'memory_mb': memory_info.rss / 1024 / 1024,
                    'cpu_percent': proc.cpu_percent(interval=None),
                    'num_threads': proc.num_threads(),
                    'num_fds': num_fds,
                    'connections': len(connections(kind='tcp')),
                }
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def check_thresholds(self, stats: Dict) -> List[str]:
        """
        检查是否超过阈值

        返回:
            List[str]: 告警信息列表
        """
        warnings = []

        if stats['memory_mb'] > self.thresholds['memory_mb']:
            warnings.append(f"内存使用过高: {stats['memory_mb']:.2f} MB > {self.thresholds['memory_mb']} MB")

        if stats['cpu_percent'] > self.thresholds['cpu_percent']:
            warnings.append(f"CPU 使用过高: {stats['cpu_percent']:.2f}% > {self.thresholds['cpu_percent']}%")

        if stats['connections'] > self.thresholds['connections']:
            warnings.append(f"连接数过多: {stats['connections']} > {self.thresholds['connections']}")

        if stats['num_fds'] > self.thresholds['num_fds']:
            warnings.append(f"文件描述符过多: {stats['num_fds']} > {self.thresholds['num_fds']}")

        return warnings

    def monitor_once(self, active_sessions: int = 0) -> Dict:
        """
        执行一次监控检查

        参数:
            active_sessions: 代理当前存活的会话数（外部监控时为 0）
        """
        stats = self.get_process_stats()
        if stats is None:
            result = {
                'timestamp': datetime.now(),
                'pid': self.process.pid,
                'memory_mb': 0.0,
                'cpu_percent': 0.0,
                'num_threads': 0,
                'num_fds': 0,
                'connections': 0,
                'active_sessions': active_sessions,
                'warnings': ['进程不存在或无权限访问'],
            }
        else:
            result = dict(stats)
            result['timestamp'] = datetime.now()
            result['active_sessions'] = active_sessions
            result['warnings'] = self.check_thresholds(stats)

        self.history.append(result)
        self.check_count += 1
        return result

    def generate_report(self) -> str:
        """生成诊断报告"""
        if not self.history:
            return "没有历史数据"

        memory_values = [h['memory_mb'] for h in self.history]
        connection_values = [h['connections'] for h in self.history]
        fd_values = [h['num_fds'] for h in self.history]

        report = []
        report.append("=" * 80)
        report.append("SOCKS5 代理资源诊断报告")
        report.append("=" * 80)
        report.append(f"进程 ID: {self.process.pid}")
        report.append(f"监控开始时间: {self.history[0]['timestamp']}")
        report.append(f"监控结束时间: {self.history[-1]['timestamp']}")
        report.append(f"检查次数: {len(self.history)}")
        report.append("")
        report.append(f"内存: 最大 {max(memory_values):.2f} MB, "
                      f"平均 {sum(memory_values) / len(memory_values):.2f} MB, "
                      f"增长 {memory_values[-1] - memory_values[0]:.2f} MB")
        report.append(f"连接数: 最大 {max(connection_values)}, "
                      f"增长 {connection_values[-1] - connection_values[0]}")
        report.append(f"文件描述符: 最大 {max(fd_values)}, "
                      f"增长 {fd_values[-1] - fd_values[0]}")
        report.append("")

        warning_counts: Dict[str, int] = {}
        for h in self.history:
            for warning in h['warnings']:
                warning_type = warning.split(':')[0]
                warning_counts[warning_type] = warning_counts.get(warning_type, 0) + 1

        if warning_counts:
            report.append("告警统计:")
            for warning_type, count in sorted(warning_counts.items(), key=lambda x: x[1], reverse=True):
                report.append(f"  {warning_type}: {count} 次")
        else:
            report.append("✓ 未检测到异常")

        if len(fd_values) > 1 and fd_values[-1] > fd_values[0] * 2 and fd_values[-1] > 100:
            report.append("⚠️  文件描述符持续增长，检查是否有会话未关闭客户端或目标连接")

        report.append("=" * 80)
        return "\n".join(report)

    async def monitor_loop(self, interval: int = 5, duration: Optional[int] = None):
        """持续监控并打印状态"""
        start_time = time.time()
        while True:
            result = self.monitor_once()
            print(f"[{result['timestamp'].strftime('%Y-%m-%d %H:%M:%S')}] "
                  f"内存 {result['memory_mb']:.2f} MB | CPU {result['cpu_percent']:.1f}% | "
                  f"fd {result['num_fds']} | 连接 {result['connections']}")
            for warning in result['warnings']:
                print(f"  ⚠️  {warning}")

            if duration and (time.time() - start_time) >= duration:
                break
            await asyncio.sleep(interval)


def main():
    parser = argparse.ArgumentParser(description='SOCKS5 代理资源监控工具')
    parser.add_argument('--pid', type=int, default=None, help='要监控的进程 ID')
    parser.add_argument('--match', default='socks5-proxy', help='按命令行子串查找进程（未指定 --pid 时）')
    parser.add_argument('--interval', type=int, default=5, help='检查间隔 (秒)')
    parser.add_argument('--duration', type=int, default=None, help='监控时长 (秒)')
    parser.add_argument('--report', action='store_true', help='结束后生成诊断报告')
    args = parser.parse_args()

    pid = args.pid
    if pid is None:
        processes = ResourceMonitor.find_processes(args.match)
        if not processes:
            print(f"未找到匹配 '{args.match}' 的进程", file=sys.stderr)
            return 1
        pid = processes[0].pid

    try:
        monitor = ResourceMonitor(pid)
    except psutil.NoSuchProcess:
        print(f"进程不存在: {pid}", file=sys.stderr)
        return 1

    try:
        asyncio.run(monitor.monitor_loop(args.interval, args.duration))
    except KeyboardInterrupt:
        print("\n监控已中断")

    if args.report:
        print("\n" + monitor.generate_report())
    return 0


if __name__ == '__main__':
    sys.exit(main())
