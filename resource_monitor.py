#!/usr/bin/env python3
"""
资源监控和诊断工具 - 实时监控 SOCKS5 代理进程的资源使用情况

功能:
1. 监控进程的内存、CPU、文件描述符和 TCP 连接数量
2. 检测资源泄漏（会话结束后套接字未关闭会表现为描述符和连接持续增长）
3. 提供实时告警
4. 生成诊断报告
"""

import argparse
import asyncio
import os
import sys
import time
from datetime import datetime
from typing import Dict, List, Optional

import psutil


class ResourceMonitor:
    """资源监控器"""

    def __init__(self, match: str = 'socks5-proxy', check_interval: int = 5,
                 pids: Optional[List[int]] = None):
        """
        初始化资源监控器

        参数:
            match: 进程名或命令行中包含该字符串的进程被视为代理进程
            check_interval: 检查间隔 (秒)
            pids: 直接指定要监控的进程 ID（优先于 match）
        """
        self.match = match
        self.check_interval = check_interval
        self.pids = pids or []
        self.history = []

        # 告警阈值
        self.thresholds = {
            'memory_mb': 500,        # 内存阈值: 500MB
            'cpu_percent': 80,       # CPU 阈值: 80%
            'connections': 1000,     # TCP 连接数阈值
            'num_fds': 2000,         # 文件描述符阈值
        }

    def find_processes(self) -> List[psutil.Process]:
        """
        查找目标进程

        返回:
            List[psutil.Process]: 进程列表
        """
        if self.pids:
            processes = []
            for pid in self.pids:
                try:
                    processes.append(psutil.Process(pid))
                except psutil.NoSuchProcess:
                    continue
            return processes

        processes = []
        own_pid = os.getpid()
        for proc in psutil.process_iter(['name', 'cmdline', 'pid']):
            # socks5-proxy-monitor 的命令行同样包含匹配字符串
            if proc.info['pid'] == own_pid:
                continue
            try:
                cmdline = ' '.join(proc.info['cmdline'] or [])
                if self.match in (proc.info['name'] or '') or self.match in cmdline:
                    processes.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return processes

    def get_process_stats(self, proc: psutil.Process) -> Optional[Dict]:
        """
        获取进程统计信息

        参数:
            proc: 进程对象

        返回:
            Dict: 统计信息，进程已退出或无权限时返回 None
        """
        try:
            with proc.oneshot():
                memory_info = proc.memory_info()
                if hasattr(proc, 'net_connections'):
                    connections = proc.net_connections(kind='tcp')
                else:
                    connections = proc.connections(kind='tcp')
                return {
                    'pid': proc.pid,
                    'memory_mb': memory_info.rss / 1024 / 1024,
                    'cpu_percent': proc.cpu_percent(interval=None),
                    'num_threads': proc.num_threads(),
                    'num_fds': proc.num_fds() if hasattr(proc, 'num_fds') else 0,
                    'connections': len(connections),
                    'established': sum(1 for c in connections if c.status == psutil.CONN_ESTABLISHED),
                    'create_time': datetime.fromtimestamp(proc.create_time())
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

    def monitor_once(self) -> Dict:
        """
        执行一次监控检查

        返回:
            Dict: 监控结果
        """
        processes = self.find_processes()

        result = {
            'timestamp': datetime.now(),
            'process_count': len(processes),
            'total_memory_mb': 0.0,
            'total_cpu_percent': 0.0,
            'total_connections': 0,
            'total_fds': 0,
            'warnings': []
        }

        if not processes:
            result['warnings'].append('未找到目标进程')
            return result

        for proc in processes:
            stats = self.get_process_stats(proc)
            if not stats:
                continue
            result['total_memory_mb'] += stats['memory_mb']
            result['total_cpu_percent'] += stats['cpu_percent']
            result['total_connections'] += stats['connections']
            result['total_fds'] += stats['num_fds']
            result['warnings'].extend(self.check_thresholds(stats))

        self.history.append(result)
        return result

    def print_status(self, result: Dict):
        """打印监控状态"""
        print(f"\n[{result['timestamp'].strftime('%Y-%m-%d %H:%M:%S')}]")
        print(f"  进程数: {result['process_count']}")
        print(f"  总内存: {result['total_memory_mb']:.2f} MB")
        print(f"  总CPU: {result['total_cpu_percent']:.2f}%")
        print(f"  TCP 连接数: {result['total_connections']}")
        print(f"  文件描述符: {result['total_fds']}")

        if result['warnings']:
            print("  告警:")
            for warning in result['warnings']:
                print(f"    - {warning}")
        else:
            print("  ✓ 状态正常")

    async def monitor_loop(self, duration: int = None):
        """
        持续监控

        参数:
            duration: 监控时长 (秒), None 表示无限期
        """
        print(f"开始监控进程: {self.pids or self.match}")
        print(f"检查间隔: {self.check_interval} 秒")
        print("-" * 80)

        start_time = time.time()

        while True:
            self.print_status(self.monitor_once())

            if duration and (time.time() - start_time) >= duration:
                break

            await asyncio.sleep(self.check_interval)

    def generate_report(self) -> str:
        """
        生成诊断报告

        返回:
            str: 报告内容
        """
        if not self.history:
            return "没有历史数据"

        first, last = self.history[0], self.history[-1]
        memory_values = [h['total_memory_mb'] for h in self.history]
        connection_values = [h['total_connections'] for h in self.history]
        fd_values = [h['total_fds'] for h in self.history]

        report = []
        report.append("=" * 80)
        report.append("SOCKS5 代理资源诊断报告")
        report.append("=" * 80)
        report.append(f"监控开始时间: {first['timestamp']}")
        report.append(f"监控结束时间: {last['timestamp']}")
        report.append(f"检查次数: {len(self.history)}")
        report.append("")
        report.append(f"内存: 最大 {max(memory_values):.2f} MB, 增长 {memory_values[-1] - memory_values[0]:.2f} MB")
        report.append(f"TCP 连接: 最大 {max(connection_values)}, 增长 {connection_values[-1] - connection_values[0]}")
        report.append(f"文件描述符: 最大 {max(fd_values)}, 增长 {fd_values[-1] - fd_values[0]}")
        report.append("")

        warning_counts = {}
        for h in self.history:
            for warning in h['warnings']:
                warning_type = warning.split(':')[0]
                warning_counts[warning_type] = warning_counts.get(warning_type, 0) + 1

        if warning_counts:
            report.append("告警统计:")
            for warning_type, count in sorted(warning_counts.items(), key=lambda x: x[1], reverse=True):
                report.append(f"  {warning_type}: {count} 次")
            report.append("")

        # 描述符只增不减通常意味着会话结束后套接字没有关闭
        if len(fd_values) > 2 and all(b >= a for a, b in zip(fd_values, fd_values[1:])) \
                and fd_values[-1] > fd_values[0]:
            report.append("⚠️  文件描述符持续增长，可能存在套接字泄漏")
        elif not warning_counts:
            report.append("✓ 未检测到异常,系统运行正常")

        report.append("=" * 80)
        return "\n".join(report)


def main():
    parser = argparse.ArgumentParser(description='SOCKS5 代理资源监控和诊断工具')
    parser.add_argument('--match', default='socks5-proxy', help='进程名或命令行匹配字符串（直接运行脚本时使用 --match server.py）')
    parser.add_argument('--pid', type=int, action='append', help='要监控的进程 ID（可重复）')
    parser.add_argument('--interval', type=int, default=5, help='检查间隔 (秒)')
    parser.add_argument('--duration', type=int, default=None, help='监控时长 (秒)')
    args = parser.parse_args()

    monitor = ResourceMonitor(args.match, args.interval, args.pid)

    try:
        asyncio.run(monitor.monitor_loop(duration=args.duration))
    except KeyboardInterrupt:
        print("\n监控已中断")
    print("\n" + monitor.generate_report())
    return 0


if __name__ == '__main__':
    sys.exit(main())
