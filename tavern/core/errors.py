"""
tavern.core.errors
~~~~~~~~~~~~~~~~~~

业务异常体系。

服务层只抛出 ``TavernError`` 的子类，由 ``tavern.main`` 中注册的异常处理器
统一转换为 ``ApiResponse.fail()``，HTTP 状态码取自异常类的 ``status_code``。
所有校验、鉴权、存在性检查都发生在写库之前，异常意味着状态未被修改。
"""
from __future__ import annotations


class TavernError(Exception):
    """所有业务异常的基类。"""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TavernError):
    """请求参数不合法（缺字段、房间重名、骰子表达式错误等）。"""

    status_code = 400


class InvalidExpression(ValidationError):
    """骰子表达式中出现无法识别的片段。"""


class InvalidDiceRange(ValidationError):
    """骰子数量或面数超出允许范围。"""


class AuthenticationError(TavernError):
    """缺少凭证或凭证无效。"""

    status_code = 401


class AuthorizationError(TavernError):
    """已登录但无权执行该操作。"""

    status_code = 403


class NotFoundError(TavernError):
    """会话 / 玩家 / 房间 / 先攻条目不存在。"""

    status_code = 404


class ConflictError(TavernError):
    """资源冲突，例如邀请码多次重试后仍重复。"""

    status_code = 409


class ConcurrentModificationError(ConflictError):
    """乐观锁版本号不匹配：文档在读取后已被其他请求修改。"""
