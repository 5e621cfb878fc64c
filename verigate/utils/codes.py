"""
验证码工具：生成、哈希、校验、过期判断
"""
import secrets
from datetime import datetime
from typing import Optional

from passlib.context import CryptContext

from verigate.utils.timezone import utc_now_naive

CODE_LENGTH = 6
CODE_SPACE = 10 ** CODE_LENGTH
DEFAULT_HASH_ROUNDS = 10


def generate_code() -> str:
    """使用安全随机数生成 6 位数字验证码（左侧补零）"""
    return str(secrets.randbelow(CODE_SPACE)).zfill(CODE_LENGTH)


def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    """严格大于才算过期，等于过期时间时仍然有效"""
    return (now or utc_now_naive()) > expires_at


class CodeHasher:
    """bcrypt 哈希，每次调用随机盐，校验时使用哈希自带的盐"""

    def __init__(self, rounds: int = DEFAULT_HASH_ROUNDS):
        self._context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=rounds,
        )

    def hash(self, code: str) -> str:
        return self._context.hash(code)

    def verify(self, code: str, code_hash: str) -> bool:
        # passlib 的比较是常量时间的
        try:
            return self._context.verify(code, code_hash)
        except (ValueError, TypeError):
            return False
