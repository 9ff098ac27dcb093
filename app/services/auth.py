"""
认证与权限模块：JWT 令牌生成/验证、从请求中提取用户、管理员角色判定。

用户注册登录由外部账号服务负责，本服务只校验 Bearer 令牌（sub 为用户 ID），
管理员判定通过可替换的 RolePolicy 完成，测试中可直接注入桩实现。
"""

import logging
import os
from datetime import datetime, timedelta, timezone

from fastapi import Request
from jose import JWTError, jwt

from app.database import get_db
from app.services.errors import ForbiddenError, UnauthorizedError

logger = logging.getLogger(__name__)

JWT_SECRET = os.environ.get("JWT_SECRET", "change-me-to-a-random-secret-key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 24


def create_token(user_id: str, expire_hours: int = JWT_EXPIRE_HOURS) -> str:
    """生成 JWT 令牌，默认有效期 24 小时。"""
    expire = datetime.now(timezone.utc) + timedelta(hours=expire_hours)
    payload = {"sub": user_id, "exp": expire}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    解码并验证 JWT 令牌。

    Returns:
        解码后的 payload 字典。

    Raises:
        ValueError: 令牌无效或已过期。
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        if "sub" not in payload:
            raise ValueError("令牌缺少用户信息")
        return payload
    except JWTError as e:
        raise ValueError(f"令牌无效: {e}")


def get_request_user_id(request: Request) -> str | None:
    """
    从 Authorization header (Bearer) 中提取并验证 JWT。

    Returns:
        用户 ID；令牌缺失或无效时返回 None，由业务层抛出 UnauthorizedError。
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None

    try:
        payload = verify_token(auth_header[7:])
    except ValueError as e:
        logger.info("令牌校验失败: %s", e)
        return None
    return payload["sub"]


class RolePolicy:
    """权限判定接口。"""

    def is_admin(self, user_id: str) -> bool:
        raise NotImplementedError


class UserRolePolicy(RolePolicy):
    """按 users.role 判定管理员。"""

    def is_admin(self, user_id: str) -> bool:
        db = get_db()
        try:
            row = db.execute(
                "SELECT role FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            return bool(row) and row["role"] == "admin"
        finally:
            db.close()


def require_admin(user_id: str | None, role_policy: RolePolicy | None = None) -> None:
    """
    校验请求用户为管理员。

    Raises:
        UnauthorizedError: 未登录。
        ForbiddenError: 非管理员。
    """
    if not user_id:
        raise UnauthorizedError("未提供有效的认证令牌")
    if not (role_policy or UserRolePolicy()).is_admin(user_id):
        raise ForbiddenError("需要管理员权限")
