"""
SOCKS5 测试客户端报文

构造客户端一侧的报文并解析代理的回复，供测试驱动代理使用。
代理本身不依赖本模块。
"""

import ipaddress
import struct
from dataclasses import dataclass
from typing import Iterable

from errors import IncompleteMessage
from socks5_protocol import REPLY_SIZE, SOCKS5, Request, TargetAddress


@dataclass(frozen=True)
class Reply:
    """请求回复"""
    version: int
    rep: int
    atyp: int
    bind_addr: str
    bind_port: int


def make_greeting(methods: Iterable[int]) -> bytes:
    methods = bytes(methods)
    return bytes([SOCKS5.VERSION, len(methods)]) + methods


def make_auth_request(username: str, password: str) -> bytes:
    """构造用户名/密码认证请求，字段超过 255 字节时抛出 ValueError"""
    uname = username.encode('utf-8')
    passwd = password.encode('utf-8')
    if len(uname) > 255 or len(passwd) > 255:
        raise ValueError("用户名和密码不能超过 255 字节")
    return (bytes([SOCKS5.USERPASS_VERSION, len(uname)]) + uname
            + bytes([len(passwd)]) + passwd)


def make_request(cmd: int, address: TargetAddress) -> bytes:
    return Request(cmd, address).encode()


def parse_reply(data: bytes) -> Reply:
    if len(data) < REPLY_SIZE:
        raise IncompleteMessage("SOCKS5 回复数据不足")
    version, rep, _rsv, atyp, addr, port = struct.unpack('>BBBB4sH', data[:REPLY_SIZE])
    return Reply(version, rep, atyp, str(ipaddress.IPv4Address(addr)), port)
