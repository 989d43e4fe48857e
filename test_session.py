#!/usr/bin/env python3
"""
SOCKS5 会话状态机测试

客户端数据预先写入 StreamReader，出站连接通过 monkeypatch 替换，
因此整个握手在内存中完成。
"""

import asyncio
import socket
import struct

import pytest

import session
from config import ProxyConfig
from connection import Upstream
from errors import AuthFailure, ConnectError, ProtocolError
from session import SessionState, Socks5Session
from socks5_client import make_auth_request, make_greeting, make_request
from socks5_protocol import GENERAL_FAILURE_REPLY, SOCKS5, ReplyCode, TargetAddress, make_reply


SUCCESS_REPLY = make_reply(ReplyCode.SUCCEEDED)


class FakeWriter:
    """记录写入内容的 StreamWriter 替身"""

    def __init__(self, peername=('198.51.100.7', 40000), sock=None):
        self.data = bytearray()
        self.sock = sock
        self.eof = False
        self.close_count = 0
        self._peername = peername

    def write(self, data):
        self.data += data

    async def drain(self):
        pass

    def can_write_eof(self):
        return True

    def write_eof(self):
        self.eof = True

    def close(self):
        self.close_count += 1

    def is_closing(self):
        return self.close_count > 0

    async def wait_closed(self):
        pass

    def get_extra_info(self, name, default=None):
        if name == 'peername':
            return self._peername
        if name == 'socket':
            return self.sock
        return default


class FakeTarget:
    """替换 connect_to_target，记录连接目标"""

    def __init__(self, response=b'', error=None):
        self.calls = []
        self.response = response
        self.error = error
        self.writer = FakeWriter(peername=('203.0.113.1', 80))

    async def __call__(self, host, port, timeout=30.0):
        self.calls.append((host, port))
        if self.error:
            raise self.error
        reader = asyncio.StreamReader()
        if self.response:
            reader.feed_data(self.response)
        reader.feed_eof()
        return Upstream(host=host, port=port, reader=reader, writer=self.writer)


@pytest.fixture
def target(monkeypatch):
    fake = FakeTarget()
    monkeypatch.setattr(session, 'connect_to_target', fake)
    return fake


def _users_file(tmp_path, content=''):
    users_file = tmp_path / 'users.txt'
    users_file.write_text(content)
    return str(users_file)


def _connect(host='192.0.2.10', port=80):
    if ':' in host:
        address = TargetAddress.ipv6(host, port)
    elif host.replace('.', '').isdigit():
        address = TargetAddress.ipv4(host, port)
    else:
        address = TargetAddress.domain(host, port)
    return make_request(SOCKS5.CMD_CONNECT, address)


def _run_session(config, *chunks, sock=None):
    """用给定的客户端数据运行一个会话，返回 (结果, 客户端写入器)"""
    async def scenario():
        reader = asyncio.StreamReader()
        for chunk in chunks:
            reader.feed_data(chunk)
        reader.feed_eof()
        writer = FakeWriter(sock=sock)
        outcome = await Socks5Session(reader, writer, config, 'test').run()
        return outcome, writer

    return asyncio.run(scenario())


# ============================================================================
# 无认证
# ============================================================================

def test_no_auth_when_users_file_empty(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path))
    target.response = b'HTTP/1.0 200 OK\r\n\r\n'

    outcome, writer = _run_session(config, make_greeting([SOCKS5.AUTH_NONE]),
                                   _connect() + b'GET / HTTP/1.0\r\n\r\n')

    assert outcome.succeeded
    assert outcome.state is SessionState.CLOSED
    assert target.calls == [('192.0.2.10', 80)]
    assert bytes(writer.data) == b'\x05\x00' + SUCCESS_REPLY + b'HTTP/1.0 200 OK\r\n\r\n'
    # 请求后紧跟的数据原样转发
    assert bytes(target.writer.data) == b'GET / HTTP/1.0\r\n\r\n'
    assert outcome.stats.client_to_remote == len(b'GET / HTTP/1.0\r\n\r\n')
    assert outcome.username is None


def test_missing_users_file_is_created(tmp_path, target):
    users_file = tmp_path / 'sub' / 'users.txt'
    config = ProxyConfig(users_file=str(users_file))

    outcome, _ = _run_session(config, make_greeting([SOCKS5.AUTH_NONE]) + _connect())

    assert outcome.succeeded
    assert users_file.exists()


def test_fragmented_handshake(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path))
    data = make_greeting([SOCKS5.AUTH_NONE]) + _connect('example.com', 443)

    outcome, writer = _run_session(config, *[data[i:i + 1] for i in range(len(data))])

    assert outcome.succeeded
    assert target.calls == [('example.com', 443)]
    assert outcome.requested.host == 'example.com'


# ============================================================================
# 用户名/密码认证
# ============================================================================

def test_no_auth_rejected_when_users_exist(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path, 'alice:secret\n'))

    outcome, writer = _run_session(config, make_greeting([SOCKS5.AUTH_NONE]) + _connect())

    assert not outcome.succeeded
    assert outcome.failed_state is SessionState.SELECT_METHOD
    assert isinstance(outcome.error, AuthFailure)
    assert bytes(writer.data) == b'\x05\xff'
    assert target.calls == []
    assert writer.close_count == 1


def test_wrong_password(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path, 'alice:secret\n'))

    outcome, writer = _run_session(
        config,
        make_greeting([SOCKS5.AUTH_NONE, SOCKS5.AUTH_USERPASS]),
        make_auth_request('alice', 'guess') + _connect()
    )

    assert outcome.failed_state is SessionState.AWAIT_AUTH
    assert isinstance(outcome.error, AuthFailure)
    assert bytes(writer.data) == b'\x05\x02\x01\xff'
    assert outcome.username is None
    assert target.calls == []


def test_correct_password(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path, 'alice:secret\nbob:hunter2\n'))

    outcome, writer = _run_session(
        config,
        make_greeting([SOCKS5.AUTH_USERPASS]),
        make_auth_request('bob', 'hunter2'),
        _connect('2001:db8::5', 8443)
    )

    assert outcome.succeeded
    assert outcome.username == 'bob'
    assert bytes(writer.data) == b'\x05\x02' + b'\x01\x00' + SUCCESS_REPLY
    assert target.calls == [('2001:db8::5', 8443)]


def test_userpass_offered_without_users_still_authenticates(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path))

    outcome, writer = _run_session(
        config,
        make_greeting([SOCKS5.AUTH_NONE, SOCKS5.AUTH_USERPASS]),
        make_auth_request('anyone', 'anything') + _connect()
    )

    assert outcome.failed_state is SessionState.AWAIT_AUTH
    assert bytes(writer.data) == b'\x05\x02\x01\xff'


# ============================================================================
# 请求与连接
# ============================================================================

def test_unsupported_command(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path))
    bind = make_request(SOCKS5.CMD_BIND, TargetAddress.ipv4('192.0.2.10', 80))

    outcome, writer = _run_session(config, make_greeting([SOCKS5.AUTH_NONE]) + bind)

    assert outcome.failed_state is SessionState.AWAIT_REQUEST
    assert isinstance(outcome.error, ProtocolError)
    assert bytes(writer.data) == b'\x05\x00' + make_reply(ReplyCode.COMMAND_NOT_SUPPORTED)
    assert target.calls == []


def test_truncated_request(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path))
    request = _connect()

    outcome, writer = _run_session(config, make_greeting([SOCKS5.AUTH_NONE]) + request[:6])

    assert outcome.failed_state is SessionState.AWAIT_REQUEST
    assert bytes(writer.data) == b'\x05\x00' + GENERAL_FAILURE_REPLY
    assert target.calls == []


def test_connect_failure(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path))
    target.error = ConnectError("连接被拒绝", GENERAL_FAILURE_REPLY)

    outcome, writer = _run_session(config, make_greeting([SOCKS5.AUTH_NONE]) + _connect())

    assert outcome.failed_state is SessionState.CONNECT
    assert bytes(writer.data) == b'\x05\x00' + GENERAL_FAILURE_REPLY
    assert writer.close_count == 1


def test_client_closes_before_greeting(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path))

    outcome, writer = _run_session(config, b'\x05')

    assert outcome.failed_state is SessionState.AWAIT_GREETING
    assert bytes(writer.data) == b'\x05\xff'
    assert writer.close_count == 1


def test_sockets_closed_once(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path))

    outcome, writer = _run_session(config, make_greeting([SOCKS5.AUTH_NONE]) + _connect())

    assert outcome.succeeded
    assert writer.close_count == 1
    assert target.writer.close_count == 1


# ============================================================================
# 流量嗅探
# ============================================================================

def test_sniffer_redirects_ssh(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path), sniff_enabled=True)
    banner = b'SSH-2.0-OpenSSH_9.6\r\n'

    outcome, writer = _run_session(
        config,
        make_greeting([SOCKS5.AUTH_NONE]) + _connect('10.0.0.5', 2222) + banner
    )

    assert outcome.succeeded
    assert outcome.redirected
    assert outcome.requested.port == 2222
    assert outcome.destination == ('127.0.0.1', 22)
    assert target.calls == [('127.0.0.1', 22)]
    # 嗅探读取的字节在转发开始时首先写入目标
    assert bytes(target.writer.data) == banner


def test_sniffer_keeps_destination_without_signature(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path), sniff_enabled=True, sniff_timeout=0.05)
    payload = struct.pack('>I', 0xdeadbeef)

    outcome, _ = _run_session(
        config,
        make_greeting([SOCKS5.AUTH_NONE]) + _connect('10.0.0.5', 2222) + payload
    )

    assert outcome.succeeded
    assert not outcome.redirected
    assert target.calls == [('10.0.0.5', 2222)]
    assert bytes(target.writer.data) == payload


def test_sniffer_disabled_by_default(tmp_path, target):
    config = ProxyConfig(users_file=_users_file(tmp_path))

    outcome, _ = _run_session(
        config,
        make_greeting([SOCKS5.AUTH_NONE]) + _connect('10.0.0.5', 2222) + b'SSH-2.0-x\r\n'
    )

    assert target.calls == [('10.0.0.5', 2222)]
    assert not outcome.redirected


# ============================================================================
# 套接字调优
# ============================================================================

def test_unusable_keepalive_values_do_not_break_session(tmp_path, target):
    # 直接构造配置，绕过 load_config 的范围检查
    config = ProxyConfig(users_file=_users_file(tmp_path),
                         keepalive_interval=2 ** 32, keepalive_count=2 ** 32)

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        outcome, writer = _run_session(
            config, make_greeting([SOCKS5.AUTH_NONE]) + _connect(), sock=sock
        )

    assert outcome.succeeded
    assert bytes(writer.data) == b'\x05\x00' + SUCCESS_REPLY
