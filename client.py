"""
API クライアント
SlipBackend の操作を HTTP（requests）で main.py のサーバーに送る
"""

import logging
from typing import Dict, List, Optional

import requests

from charges import ChargeCategory
from config import API_BASE_URL, API_TIMEOUT
from errors import NotFoundError, PartialBatchFailure, PersistenceError
from repository import SlipBackend
from schemas import (
    ChargePlan, OrderCreate, OrderResponse, OrderUpdate, PricingSystemResponse, ProfileResponse,
    SessionGuestCreate, SessionResponse, SessionTimesUpdate, SessionUpdate, StoreSettings,
    TableResponse, Token,
)

logger = logging.getLogger(__name__)


class ApiBackend(SlipBackend):
    """
    HTTP 経由の SlipBackend。

    atomic_charges=False（既定）の場合、再計算結果は「カテゴリごとの削除 → 明細ごとの作成」を
    順番に送るため、途中で失敗すると一部だけ反映された状態になる（PartialBatchFailure）。
    True の場合は POST /api/sessions/{id}/charges でサーバー側の1トランザクションに任せる。
    """

    def __init__(self, token: str, base_url: str = API_BASE_URL, timeout: float = API_TIMEOUT,
                 http: Optional[requests.Session] = None, atomic_charges: bool = False):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.atomic_charges = atomic_charges
        self.http = http or requests.Session()
        self.http.headers.update({"Authorization": f"Bearer {token}"})

    @classmethod
    def login(cls, username: str, password: str, base_url: str = API_BASE_URL, **kwargs) -> "ApiBackend":
        """店舗ログインしてトークン付きのクライアントを返す"""
        url = f"{base_url.rstrip('/')}/api/auth/login"
        try:
            resp = requests.post(url, json={"username": username, "password": password},
                                 timeout=kwargs.get("timeout", API_TIMEOUT))
        except requests.RequestException as e:
            raise PersistenceError("ログインに失敗しました", detail=str(e)) from e
        if resp.status_code >= 400:
            raise PersistenceError("ログインに失敗しました", detail=resp.text)
        token = Token(**resp.json())
        logger.info("logged in: store=%s role=%s", token.store_name, token.role)
        return cls(token.access_token, base_url=base_url, **kwargs)

    def _request(self, method: str, path: str, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            resp = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise PersistenceError("通信に失敗しました", detail=str(e)) from e

        if resp.status_code == 404:
            raise NotFoundError("見つかりません", detail={"path": path})
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = None
            detail = body.get("detail") if isinstance(body, dict) else resp.text
            logger.error("%s %s -> %s %s", method, path, resp.status_code, detail)
            raise PersistenceError(f"サーバーエラー（{resp.status_code}）", detail=detail)
        if not resp.content:
            return None
        return resp.json()

    # ========================
    # セッション
    # ========================

    def get_session_by_id(self, session_id) -> Optional[SessionResponse]:
        try:
            data = self._request("GET", f"/api/sessions/{session_id}")
        except NotFoundError:
            return None
        return SessionResponse(**data)

    def update_session(self, session_id, fields: Dict):
        body = SessionUpdate(**fields).model_dump(mode="json", exclude_unset=True)
        self._request("PUT", f"/api/sessions/{session_id}", json=body)

    def update_session_times(self, session_id, start_time, end_time):
        body = SessionTimesUpdate(start_time=start_time, end_time=end_time).model_dump(mode="json")
        self._request("PUT", f"/api/sessions/{session_id}/times", json=body)

    def close_session(self, session_id):
        self._request("PUT", f"/api/sessions/{session_id}/checkout")

    def reopen_session(self, session_id):
        self._request("PUT", f"/api/sessions/{session_id}/reopen")

    def delete_session(self, session_id):
        self._request("DELETE", f"/api/sessions/{session_id}")

    # ========================
    # 注文
    # ========================

    def create_order(self, session_id, items, guest_id=None, cast_id=None) -> List[OrderResponse]:
        body = OrderCreate(items=items, guest_id=guest_id, cast_id=cast_id).model_dump(mode="json")
        data = self._request("POST", f"/api/sessions/{session_id}/orders", json=body)
        return [OrderResponse(**o) for o in data or []]

    def update_order(self, order_id, fields: Dict):
        body = OrderUpdate(**fields).model_dump(mode="json", exclude_unset=True)
        self._request("PUT", f"/api/orders/{order_id}", json=body)

    def delete_order(self, order_id):
        self._request("DELETE", f"/api/orders/{order_id}")

    def delete_orders_by_name(self, session_id, name: str):
        self._request("DELETE", f"/api/sessions/{session_id}/orders", params={"name": name})

    def apply_charge_plan(self, session_id, plan: ChargePlan):
        if self.atomic_charges:
            self._request("POST", f"/api/sessions/{session_id}/charges", json=plan.model_dump(mode="json"))
            return

        completed = 0
        try:
            for value in plan.categories:
                self.delete_orders_by_name(session_id, ChargeCategory(value).label)
                completed += 1
            for charge in plan.charges:
                self.create_order(session_id, [charge], charge.guest_id, charge.cast_id)
                completed += 1
        except PersistenceError as e:
            if completed == 0:
                raise
            logger.error("charge plan interrupted: session=%s completed=%s", session_id, completed)
            raise PartialBatchFailure(
                "再計算が途中で失敗しました", completed_steps=completed, detail=e.detail,
            ) from e

    # ========================
    # ゲスト
    # ========================

    def add_guest_to_session(self, session_id, guest_id):
        body = SessionGuestCreate(guest_id=guest_id).model_dump()
        self._request("POST", f"/api/sessions/{session_id}/guests", json=body)

    def remove_guest_from_session(self, session_id, guest_id):
        self._request("DELETE", f"/api/sessions/{session_id}/guests/{guest_id}")

    # ========================
    # 参照データ
    # ========================

    def get_pricing_systems(self) -> List[PricingSystemResponse]:
        return [PricingSystemResponse(**p) for p in self._request("GET", "/api/pricing-systems")]

    def get_tables(self) -> List[TableResponse]:
        return [TableResponse(**t) for t in self._request("GET", "/api/tables")]

    def get_casts(self) -> List[ProfileResponse]:
        return [ProfileResponse(**p) for p in self._request("GET", "/api/casts")]

    def get_guests(self) -> List[ProfileResponse]:
        return [ProfileResponse(**p) for p in self._request("GET", "/api/guests")]

    def get_store_settings(self) -> StoreSettings:
        return StoreSettings(**self._request("GET", "/api/store/settings"))
