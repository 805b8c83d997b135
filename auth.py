"""
認証と権限
店舗ログイン（PIN / パスワード）→ JWT 発行、ロールとページ権限の判定
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY

logger = logging.getLogger(__name__)

security = HTTPBearer()

EDIT_ROLES = ("admin", "staff")


class CurrentUser:
    def __init__(self, username: str, role: str, store_id: Optional[int] = None, permissions: Optional[Dict] = None):
        self.username = username
        self.role = role
        self.store_id = store_id
        self.permissions = permissions


def verify_password(plain_password: str, hashed_password: str) -> bool:
    password_bytes = plain_password.encode('utf-8')[:72]
    hashed_bytes = hashed_password.encode('utf-8')
    return bcrypt.checkpw(password_bytes, hashed_bytes)


def get_password_hash(password: str) -> str:
    password_bytes = password.encode('utf-8')[:72]
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password_bytes, salt).decode('utf-8')


def create_access_token(data: dict):
    to_encode = data.copy()
    expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def resolve_role(store, password: str) -> Optional[str]:
    """PIN認証（経営者PIN or スタッフPIN）、なければパスワード認証"""
    if store.manager_pin and password == store.manager_pin:
        return "admin"
    if store.staff_pin and password == store.staff_pin:
        return "staff"
    # パスワード認証は経営者扱い
    if store.hashed_password and verify_password(password, store.hashed_password):
        return "admin"
    return None


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> CurrentUser:
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    username = payload.get("sub")
    if username is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    return CurrentUser(
        username=username,
        role=payload.get("role", "staff"),
        store_id=payload.get("store_id"),
        permissions=payload.get("permissions"),
    )


def check_permission(role: str, permissions: Optional[Dict], page_key: str, edit: bool = False) -> bool:
    """
    ページ権限の判定
    - admin は常に許可
    - 権限設定がなければ staff のみ許可
    - 設定があれば view / edit（編集操作は edit のみ）
    """
    if role == "admin":
        return True
    if not permissions:
        return role == "staff"
    level = permissions.get(page_key)
    if edit:
        return level == "edit"
    return level in ("view", "edit")


def require_page(page_key: str, edit: bool = False):
    """ページ権限を要求する依存関数を作る"""

    def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if edit and user.role not in EDIT_ROLES:
            raise HTTPException(status_code=403, detail="権限がありません")
        if not check_permission(user.role, user.permissions, page_key, edit=edit):
            logger.warning("permission denied: user=%s page=%s edit=%s", user.username, page_key, edit)
            raise HTTPException(status_code=403, detail="権限がありません")
        return user

    return dependency
