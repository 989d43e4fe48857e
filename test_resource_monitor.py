#!/usr/bin/env python3
"""
资源监控工具测试

监控测试进程自身，检查统计、阈值告警和诊断报告。
"""

import os
import socket

import psutil

from resource_monitor import ResourceMonitor


def test_monitor_own_process():
    monitor = ResourceMonitor(pids=[os.getpid()])
    result = monitor.monitor_once()
    assert result['process_count'] == 1
    assert result['total_memory_mb'] > 0
    assert result['total_fds'] > 0
    assert len(monitor.history) == 1


def test_missing_process_is_reported():
    monitor = ResourceMonitor(match='no-such-socks5-proxy-process-name', pids=None)
    result = monitor.monitor_once()
    assert result['process_count'] == 0
    assert result['warnings'] == ['未找到目标进程']
    assert monitor.history == []
    assert monitor.generate_report() == "没有历史数据"


def test_thresholds():
    monitor = ResourceMonitor(pids=[os.getpid()])
    monitor.thresholds['memory_mb'] = 0
    monitor.thresholds['num_fds'] = 0
    stats = monitor.get_process_stats(monitor.find_processes()[0])
    warnings = monitor.check_thresholds(stats)
    assert any(w.startswith('内存使用过高') for w in warnings)
    assert any(w.startswith('文件描述符过多') for w in warnings)


def test_report_detects_growing_descriptors():
    monitor = ResourceMonitor(pids=[os.getpid()])
    leaked = []
    try:
        for _ in range(3):
            leaked.append(socket.socket())
            monitor.monitor_once()
        report = monitor.generate_report()
    finally:
        for sock in leaked:
            sock.close()

    assert 'SOCKS5 代理资源诊断报告' in report
    assert '检查次数: 3' in report
    assert '套接字泄漏' in report


def test_default_match_targets_console_script():
    assert ResourceMonitor().match == 'socks5-proxy'


def test_monitor_skips_its_own_process():
    monitor = ResourceMonitor(match=psutil.Process().name())
    assert os.getpid() not in [proc.pid for proc in monitor.find_processes()]
