"""
标识类型：邮箱 或 用户 ID

显式区分两种标识，所有查询都按标识类型选择过滤字段，
不再通过是否包含 "@" 来猜测。
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class IdentifierKind(str, Enum):
    EMAIL = "email"
    USER_ID = "user_id"


@dataclass(frozen=True)
class Identifier:
    kind: IdentifierKind
    value: str

    @classmethod
    def by_email(cls, email: str) -> "Identifier":
        return cls(IdentifierKind.EMAIL, email)

    @classmethod
    def by_user(cls, user_id: str) -> "Identifier":
        return cls(IdentifierKind.USER_ID, user_id)

    @property
    def is_email(self) -> bool:
        return self.kind is IdentifierKind.EMAIL

    def column(self, model: Any):
        """返回模型上对应的过滤字段（email 或 user_id）"""
        return model.email if self.is_email else model.user_id

    def matches(self, model: Any):
        return self.column(model) == self.value

    def event_fields(self) -> Dict[str, str]:
        """安全日志中用于关联该标识的字段"""
        return {"email": self.value} if self.is_email else {"user_id": self.value}

    def key_fields(self) -> Dict[str, str]:
        """频率限制 / 锁定表中的复合键"""
        return {"identifier_type": self.kind.value, "identifier": self.value}

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.value}"
