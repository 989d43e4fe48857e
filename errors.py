"""
SOCKS5 代理 - 错误类型

本模块定义了代理中所有会话级和进程级的异常类型。

会话级异常可以携带 reply 字段：即失败时仍应发送给客户端的协议字节
（例如方法协商失败的 05 FF、认证失败的 01 FF、请求阶段的失败回复帧）。
会话只有一条失败路径负责发送 reply 并拆除连接，因此回复和错误分类
始终作为同一个值传递。
"""

from typing import Optional


class Socks5ProxyError(Exception):
    """所有代理异常的基类"""

    def __init__(self, message: str, reply: Optional[bytes] = None):
        super().__init__(message)
        self.reply = reply


class ConfigError(Socks5ProxyError):
    """配置无效（例如端口号非法），启动时致命"""


class CredentialStoreError(Socks5ProxyError):
    """用户文件读取失败（文件不存在除外），仅对当前会话致命"""


class ProtocolError(Socks5ProxyError):
    """客户端发送的 SOCKS5 报文格式错误或不受支持"""


class IncompleteMessage(ProtocolError):
    """
    缓冲区中的数据不足以解析完整报文

    会话收到此异常后会继续读取；只有当客户端关闭连接时报文仍不完整，
    才作为最终错误处理并发送其中携带的回复。
    """


class AuthFailure(Socks5ProxyError):
    """没有可接受的认证方法，或用户名/密码不匹配"""


class ConnectError(Socks5ProxyError):
    """无法连接到目标地址"""


class RelayError(Socks5ProxyError):
    """数据转发期间的 I/O 错误，此时不再向客户端发送协议字节"""
