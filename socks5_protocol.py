#!/usr/bin/env python3
"""
SOCKS5 协议编解码模块

本模块定义了 SOCKS5 协议（RFC 1928）及用户名/密码子协商（RFC 1929）
的常量、报文数据结构和逐字节精确的解析/构造函数。

所有解析函数都接收累积的字节缓冲区，返回 (报文, 剩余字节)：
- 缓冲区数据不足时抛出 IncompleteMessage，调用方继续读取后重试
- 报文格式错误时抛出 ProtocolError
两种异常都携带应发送给客户端的回复字节（reply 字段）。

报文格式（所有整数均为大端序）:

    问候:       VER(1) NMETHODS(1) METHODS(NMETHODS)
    认证请求:   VER(1)=0x01 ULEN(1) UNAME(ULEN) PLEN(1) PASSWD(PLEN)
    连接请求:   VER(1) CMD(1) RSV(1) ATYP(1) DST.ADDR DST.PORT(2)
    回复:       VER(1) REP(1) RSV(1) ATYP(1)=0x01 BND.ADDR(4)=0 BND.PORT(2)=0
"""

import ipaddress
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Tuple, Union

from errors import IncompleteMessage, ProtocolError


# ============================================================================
# SOCKS5 协议常量
# ============================================================================

class SOCKS5:
    """
    SOCKS5 协议常量定义

    本实现只支持 CONNECT 命令，认证方式支持无认证和用户名/密码。
    """
    VERSION = 0x05
    RSV = 0x00

    AUTH_NONE = 0x00
    AUTH_GSSAPI = 0x01
    AUTH_USERPASS = 0x02
    AUTH_NO_ACCEPTABLE = 0xFF

    # RFC 1929 子协商
    USERPASS_VERSION = 0x01
    USERPASS_SUCCESS = 0x00
    USERPASS_FAILURE = 0xFF

    CMD_CONNECT = 0x01
    CMD_BIND = 0x02
    CMD_UDP_ASSOCIATE = 0x03

    ATYP_IPV4 = 0x01
    ATYP_DOMAIN = 0x03
    ATYP_IPV6 = 0x04


class ReplyCode(IntEnum):
    """SOCKS5 回复码（RFC 1928 第 6 节）"""
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


REPLY_SIZE = 10


# ============================================================================
# 报文构造
# ============================================================================

def make_reply(rep: int) -> bytes:
    """
    构造请求回复

    绑定地址和端口始终填零，代理从不暴露自身中继套接字的地址。
    """
    return struct.pack('>BBBB4sH', SOCKS5.VERSION, int(rep), SOCKS5.RSV,
                       SOCKS5.ATYP_IPV4, b'\x00\x00\x00\x00', 0)


def make_method_selection(method: int) -> bytes:
    return bytes([SOCKS5.VERSION, method])


def make_auth_reply(success: bool) -> bytes:
    status = SOCKS5.USERPASS_SUCCESS if success else SOCKS5.USERPASS_FAILURE
    return bytes([SOCKS5.USERPASS_VERSION, status])


# 各阶段失败时发送给客户端的回复
NO_ACCEPTABLE_METHODS = make_method_selection(SOCKS5.AUTH_NO_ACCEPTABLE)
AUTH_FAILED = make_auth_reply(False)
GENERAL_FAILURE_REPLY = make_reply(ReplyCode.GENERAL_FAILURE)


# ============================================================================
# 数据结构
# ============================================================================

@dataclass(frozen=True)
class Greeting:
    """客户端问候，methods 为客户端支持的认证方法列表"""
    methods: bytes


@dataclass(frozen=True)
class AuthRequest:
    """用户名/密码认证请求"""
    username: str
    password: str

    def __repr__(self):
        return f"AuthRequest(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class TargetAddress:
    """
    目标地址

    Attributes:
        atyp: 地址类型（ATYP_IPV4 / ATYP_DOMAIN / ATYP_IPV6）
        addr: IPv4 为 4 字节，IPv6 为 16 字节，域名为字符串
        port: 目标端口
    """
    atyp: int
    addr: Union[bytes, str]
    port: int

    @classmethod
    def ipv4(cls, host: str, port: int) -> 'TargetAddress':
        return cls(SOCKS5.ATYP_IPV4, ipaddress.IPv4Address(host).packed, port)

    @classmethod
    def ipv6(cls, host: str, port: int) -> 'TargetAddress':
        return cls(SOCKS5.ATYP_IPV6, ipaddress.IPv6Address(host).packed, port)

    @classmethod
    def domain(cls, host: str, port: int) -> 'TargetAddress':
        return cls(SOCKS5.ATYP_DOMAIN, host, port)

    @property
    def host(self) -> str:
        """可用于建立连接的主机字符串"""
        if self.atyp == SOCKS5.ATYP_IPV4:
            return str(ipaddress.IPv4Address(self.addr))
        if self.atyp == SOCKS5.ATYP_IPV6:
            return str(ipaddress.IPv6Address(self.addr))
        return self.addr

    def encode(self) -> bytes:
        """序列化为 ATYP DST.ADDR DST.PORT"""
        if self.atyp == SOCKS5.ATYP_DOMAIN:
            name = self.addr.encode('utf-8')
            body = bytes([len(name)]) + name
        else:
            body = bytes(self.addr)
        return bytes([self.atyp]) + body + struct.pack('>H', self.port)

    def __str__(self):
        if self.atyp == SOCKS5.ATYP_IPV6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class Request:
    """连接请求"""
    cmd: int
    address: TargetAddress

    def encode(self) -> bytes:
        return bytes([SOCKS5.VERSION, self.cmd, SOCKS5.RSV]) + self.address.encode()


# ============================================================================
# 报文解析
# ============================================================================

def parse_greeting(data: bytes) -> Tuple[Greeting, bytes]:
    """
    解析客户端问候

    Returns:
        (Greeting, 剩余字节)

    Raises:
        IncompleteMessage: 数据不足
        ProtocolError: 版本号不是 0x05
    """
    if len(data) < 2:
        raise IncompleteMessage("SOCKS5 问候数据不足", NO_ACCEPTABLE_METHODS)

    version, nmethods = data[0], data[1]
    if version != SOCKS5.VERSION:
        raise ProtocolError(f"不支持的 SOCKS 版本: {version:#04x}", NO_ACCEPTABLE_METHODS)

    end = 2 + nmethods
    if len(data) < end:
        raise IncompleteMessage("SOCKS5 认证方法列表不完整", NO_ACCEPTABLE_METHODS)

    return Greeting(bytes(data[2:end])), bytes(data[end:])


def parse_auth_request(data: bytes) -> Tuple[AuthRequest, bytes]:
    """
    解析用户名/密码认证请求（RFC 1929）

    Raises:
        IncompleteMessage: 数据不足
        ProtocolError: 子协商版本错误，或用户名/密码不是合法的 UTF-8
    """
    if len(data) < 2:
        raise IncompleteMessage("认证数据不足", AUTH_FAILED)

    version = data[0]
    if version != SOCKS5.USERPASS_VERSION:
        raise ProtocolError(f"不支持的认证版本: {version:#04x}", AUTH_FAILED)

    ulen = data[1]
    plen_offset = 2 + ulen
    if len(data) < plen_offset + 1:
        raise IncompleteMessage("用户名长度无效", AUTH_FAILED)

    plen = data[plen_offset]
    end = plen_offset + 1 + plen
    if len(data) < end:
        raise IncompleteMessage("密码长度无效", AUTH_FAILED)

    try:
        username = bytes(data[2:plen_offset]).decode('utf-8')
        password = bytes(data[plen_offset + 1:end]).decode('utf-8')
    except UnicodeDecodeError:
        raise ProtocolError("用户名或密码不是合法的 UTF-8", AUTH_FAILED)

    return AuthRequest(username, password), bytes(data[end:])


def parse_request(data: bytes) -> Tuple[Request, bytes]:
    """
    解析连接请求

    校验顺序: 头部长度 -> 版本 -> 命令 -> 地址类型 -> 地址和端口

    Raises:
        IncompleteMessage: 数据不足（最终回复 0x01 一般失败）
        ProtocolError: 版本错误（0x01）、命令不支持（0x07）、
            地址类型不支持（0x08）、域名不是合法的 UTF-8（0x01）
    """
    if len(data) < 4:
        raise IncompleteMessage("SOCKS5 请求数据不足", GENERAL_FAILURE_REPLY)

    version, cmd, _rsv, atyp = data[0], data[1], data[2], data[3]
    if version != SOCKS5.VERSION:
        raise ProtocolError(f"请求中的 SOCKS 版本无效: {version:#04x}", GENERAL_FAILURE_REPLY)

    if cmd != SOCKS5.CMD_CONNECT:
        raise ProtocolError(f"不支持的 SOCKS5 命令: {cmd:#04x}",
                            make_reply(ReplyCode.COMMAND_NOT_SUPPORTED))

    offset = 4
    if atyp == SOCKS5.ATYP_IPV4:
        addr_end = offset + 4
        if len(data) < addr_end + 2:
            raise IncompleteMessage("IPv4 地址不完整", GENERAL_FAILURE_REPLY)
        addr = bytes(data[offset:addr_end])
    elif atyp == SOCKS5.ATYP_DOMAIN:
        if len(data) < offset + 1:
            raise IncompleteMessage("缺少域名长度", GENERAL_FAILURE_REPLY)
        length = data[offset]
        offset += 1
        addr_end = offset + length
        if len(data) < addr_end + 2:
            raise IncompleteMessage("域名不完整", GENERAL_FAILURE_REPLY)
        try:
            addr = bytes(data[offset:addr_end]).decode('utf-8')
        except UnicodeDecodeError:
            raise ProtocolError("域名不是合法的 UTF-8", GENERAL_FAILURE_REPLY)
    elif atyp == SOCKS5.ATYP_IPV6:
        addr_end = offset + 16
        if len(data) < addr_end + 2:
            raise IncompleteMessage("IPv6 地址不完整", GENERAL_FAILURE_REPLY)
        addr = bytes(data[offset:addr_end])
    else:
        raise ProtocolError(f"不支持的地址类型: {atyp:#04x}",
                            make_reply(ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED))

    port = struct.unpack('>H', data[addr_end:addr_end + 2])[0]
    request = Request(cmd, TargetAddress(atyp, addr, port))
    return request, bytes(data[addr_end + 2:])


# ============================================================================
# 认证方法协商
# ============================================================================

def select_method(methods: bytes, credentials_configured: bool) -> int:
    """
    选择认证方法

    - 客户端支持用户名/密码时总是选择它
    - 仅当未配置任何凭据时才接受无认证
    - 否则返回 0xFF（没有可接受的方法）
    """
    if SOCKS5.AUTH_USERPASS in methods:
        return SOCKS5.AUTH_USERPASS
    if SOCKS5.AUTH_NONE in methods and not credentials_configured:
        return SOCKS5.AUTH_NONE
    return SOCKS5.AUTH_NO_ACCEPTABLE
