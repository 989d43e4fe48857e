#!/usr/bin/env python3
"""
SOCKS5 会话模块 - 单个客户端连接的协议状态机

每个接受的连接对应一个 Socks5Session，状态严格线性推进，不回退:

    LOAD_CREDENTIALS -> AWAIT_GREETING -> SELECT_METHOD -> [AWAIT_AUTH]
        -> AWAIT_REQUEST -> CONNECT -> RELAY -> CLOSED

任一步骤失败则进入 FAILED。失败时如果异常携带回复字节，会先尽力
发送给客户端，然后关闭两端套接字。会话之间不共享任何可变状态。
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, TypeVar

from config import ProxyConfig
from connection import Upstream, apply_socket_options, close_writer, connect_to_target
from credentials import check_credentials, load_users
from errors import (
    AuthFailure, CredentialStoreError, IncompleteMessage, RelayError, Socks5ProxyError,
)
from logger import add_context
from relay import RelayStats, relay
from sniffer import choose_destination, sniff
from socks5_protocol import (
    AUTH_FAILED, NO_ACCEPTABLE_METHODS, SOCKS5, ReplyCode, TargetAddress,
    make_auth_reply, make_method_selection, make_reply,
    parse_auth_request, parse_greeting, parse_request, select_method,
)

logger = logging.getLogger('socks5-proxy-session')

READ_SIZE = 4096

T = TypeVar('T')


class SessionState(Enum):
    """会话状态"""
    LOAD_CREDENTIALS = 'load_credentials'
    AWAIT_GREETING = 'await_greeting'
    SELECT_METHOD = 'select_method'
    AWAIT_AUTH = 'await_auth'
    AWAIT_REQUEST = 'await_request'
    CONNECT = 'connect'
    RELAY = 'relay'
    FAILED = 'failed'
    CLOSED = 'closed'


@dataclass
class SessionOutcome:
    """
    会话结果，返回给调用方用于日志和统计

    Attributes:
        peer: 客户端地址
        state: 终止状态（CLOSED 或 FAILED）
        failed_state: 失败发生时所处的状态
        error: 导致失败的异常
        username: 认证用户名（如果有）
        requested: 客户端请求的目标
        destination: 实际连接的 (主机, 端口)
        redirected: 目标是否被嗅探重定向
        stats: 转发字节统计
    """
    peer: str
    state: SessionState = SessionState.FAILED
    failed_state: Optional[SessionState] = None
    error: Optional[BaseException] = None
    username: Optional[str] = None
    requested: Optional[TargetAddress] = None
    destination: Optional[Tuple[str, int]] = None
    redirected: bool = False
    stats: Optional[RelayStats] = None

    @property
    def succeeded(self) -> bool:
        return self.state is SessionState.CLOSED


class Socks5Session:
    """处理单个客户端的 SOCKS5 会话"""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: ProxyConfig,
        session_id: Optional[str] = None
    ):
        """初始化会话"""
        self.reader = reader
        self.writer = writer
        self.config = config
        self.session_id = session_id or os.urandom(4).hex()
        self.state = SessionState.LOAD_CREDENTIALS
        self.buffer = b''  # 已读入但尚未解析的客户端字节

        self.users: Dict[str, str] = {}
        self.username: Optional[str] = None
        self.authenticated = False
        self.address: Optional[TargetAddress] = None
        self.upstream: Optional[Upstream] = None
        self._closed = False

        # 获取客户端信息
        peer = writer.get_extra_info('peername')
        self.client_ip = peer[0] if peer else "unknown"
        self.peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    def _log(self, level: int, msg: str):
        """记录日志（认证后包含用户名）"""
        if self.username and self.authenticated:
            logger.log(level, f"[{self.username}] {msg}")
        else:
            logger.log(level, msg)

    async def run(self) -> SessionOutcome:
        """
        主会话处理器

        不抛出会话级异常，结果通过 SessionOutcome 返回。
        """
        outcome = SessionOutcome(peer=self.peer_str)
        add_context(ip=self.client_ip, session_id=self.session_id, username='-')
        apply_socket_options(self.writer, self.config, 'client')

        try:
            outcome.stats = await self._serve(outcome)
            self.state = SessionState.CLOSED
            outcome.state = SessionState.CLOSED
        except Socks5ProxyError as e:
            self._fail(outcome, e)
            if isinstance(e, RelayError):
                self._log(logging.INFO, f"转发中断 {self.peer_str}: {e}")
            elif isinstance(e, CredentialStoreError):
                self._log(logging.ERROR, f"用户文件错误 {self.peer_str}: {e}")
            else:
                self._log(logging.WARNING,
                          f"握手失败 {self.peer_str} (状态 {outcome.failed_state.value}): {e}")
            if e.reply:
                await self._send_best_effort(e.reply)
        except (OSError, asyncio.IncompleteReadError) as e:
            # 传输层已损坏，无法再发送回复
            self._fail(outcome, e)
            self._log(logging.INFO,
                      f"连接错误 {self.peer_str} (状态 {outcome.failed_state.value}): {e}")
        finally:
            await self._cleanup()

        outcome.username = self.username if self.authenticated else None
        if outcome.succeeded:
            stats = outcome.stats
            self._log(logging.INFO,
                      f"会话结束: {self.peer_str} -> {outcome.destination[0]}:{outcome.destination[1]}, "
                      f"上行 {stats.client_to_remote} 字节, 下行 {stats.remote_to_client} 字节")
        return outcome

    def _fail(self, outcome: SessionOutcome, error: BaseException):
        outcome.failed_state = self.state
        outcome.error = error
        outcome.state = SessionState.FAILED
        self.state = SessionState.FAILED

    async def _serve(self, outcome: SessionOutcome) -> RelayStats:
        """按固定顺序执行握手、连接和转发"""
        # 每个会话重新读取用户文件，不做缓存
        self.state = SessionState.LOAD_CREDENTIALS
        self.users = await asyncio.to_thread(load_users, self.config.users_file)

        self.state = SessionState.AWAIT_GREETING
        greeting = await self._read_message(parse_greeting)

        self.state = SessionState.SELECT_METHOD
        method = select_method(greeting.methods, bool(self.users))
        if method == SOCKS5.AUTH_NO_ACCEPTABLE:
            raise AuthFailure(
                f"没有可接受的认证方法（客户端提供 {greeting.methods.hex()}）",
                NO_ACCEPTABLE_METHODS
            )
        await self._send(make_method_selection(method))

        if method == SOCKS5.AUTH_USERPASS:
            self.state = SessionState.AWAIT_AUTH
            await self._authenticate()
        else:
            self._log(logging.DEBUG, "无需认证")

        self.state = SessionState.AWAIT_REQUEST
        request = await self._read_message(parse_request)
        self.address = request.address
        outcome.requested = request.address

        self.state = SessionState.CONNECT
        host, port = self.address.host, self.address.port
        pending, self.buffer = self.buffer, b''
        if self.config.sniff_enabled:
            result = await sniff(self.reader, pending, self.config.sniff_timeout,
                                 self.config.sniff_signature)
            pending = result.data
            host, port = choose_destination(host, port, result, self.config)
            outcome.redirected = result.matched

        self._log(logging.INFO, f"CONNECT {self.address} -> {host}:{port}")
        outcome.destination = (host, port)
        self.upstream = await connect_to_target(host, port, self.config.connect_timeout)
        apply_socket_options(self.upstream.writer, self.config, 'target')

        self.state = SessionState.RELAY
        await self._send(make_reply(ReplyCode.SUCCEEDED))
        return await relay(self.reader, self.writer,
                           self.upstream.reader, self.upstream.writer, pending)

    async def _authenticate(self):
        """用户名/密码子协商，每个会话只尝试一次"""
        auth = await self._read_message(parse_auth_request)
        self.username = auth.username
        if not check_credentials(self.users, auth.username, auth.password):
            raise AuthFailure(f"用户 {auth.username!r} 认证失败", AUTH_FAILED)

        await self._send(make_auth_reply(True))
        self.authenticated = True
        add_context(username=auth.username)
        self._log(logging.INFO, f"认证成功: {self.peer_str}")

    async def _read_message(self, parse: Callable[[bytes], Tuple[T, bytes]]) -> T:
        """
        读取并解析一个完整报文

        数据不足时继续读取；客户端关闭连接时报文仍不完整，
        则把 IncompleteMessage 作为最终错误抛出。
        """
        while True:
            try:
                message, self.buffer = parse(self.buffer)
                return message
            except IncompleteMessage:
                data = await self.reader.read(READ_SIZE)
                if not data:
                    raise
                self.buffer += data

    async def _send(self, data: bytes):
        self.writer.write(data)
        await self.writer.drain()

    async def _send_best_effort(self, data: bytes):
        """发送失败回复，连接已断开时只记录日志"""
        if self.writer.is_closing():
            return
        try:
            await self._send(data)
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            self._log(logging.DEBUG, f"无法发送失败回复: {e}")

    async def _cleanup(self):
        """关闭两端连接，多次调用只执行一次"""
        if self._closed:
            return
        self._closed = True
        if self.upstream:
            await close_writer(self.upstream.writer)
        await close_writer(self.writer)
