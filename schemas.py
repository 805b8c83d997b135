"""
Pydanticモデル
サーバー（main.py / repository.py）とクライアント（client.py / slip.py）で共用する
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel

from config import DEFAULT_ROUNDING_UNIT, DEFAULT_SERVICE_CHARGE_RATE, DEFAULT_TAX_RATE


# 認証
class LoginRequest(BaseModel):
    username: str
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str
    store_id: Optional[int] = None
    store_name: Optional[str] = None
    role: str


# 店舗設定
class StoreSettings(BaseModel):
    slip_rounding_enabled: Optional[bool] = False
    slip_rounding_method: Optional[str] = "round"  # round, ceil, floor
    slip_rounding_unit: Optional[int] = DEFAULT_ROUNDING_UNIT
    service_charge_rate: Optional[int] = DEFAULT_SERVICE_CHARGE_RATE
    tax_rate: Optional[int] = DEFAULT_TAX_RATE
    class Config:
        from_attributes = True


class StoreSettingsUpdate(BaseModel):
    slip_rounding_enabled: Optional[bool] = None
    slip_rounding_method: Optional[str] = None
    slip_rounding_unit: Optional[int] = None
    service_charge_rate: Optional[int] = None
    tax_rate: Optional[int] = None
    staff_permissions: Optional[Dict[str, str]] = None


# テーブル
class TableCreate(BaseModel):
    name: str
    is_vip: bool = False


class TableResponse(BaseModel):
    id: int
    name: str
    status: str
    is_vip: bool = False
    class Config:
        from_attributes = True


# プロフィール（キャスト / ゲスト）
class ProfileCreate(BaseModel):
    display_name: str
    role: str  # cast, guest
    status: str = "在籍中"


class ProfileResponse(BaseModel):
    id: int
    display_name: Optional[str] = None
    role: str
    status: Optional[str] = None
    class Config:
        from_attributes = True


# メニュー
class MenuItemCreate(BaseModel):
    name: str
    category: str
    price: int
    stock_enabled: bool = False
    stock: int = 0


class MenuItemResponse(BaseModel):
    id: int
    name: str
    category: str
    price: int
    stock_enabled: bool = False
    stock: Optional[int] = 0
    class Config:
        from_attributes = True


# 料金システム
class PricingSystemCreate(BaseModel):
    name: str
    set_fee: int = 0
    set_duration_minutes: int = 60
    extension_fee: int = 0
    extension_duration_minutes: int = 30
    nomination_fee: int = 0
    nomination_set_duration_minutes: Optional[int] = None
    companion_fee: int = 0
    companion_set_duration_minutes: Optional[int] = None
    douhan_fee: int = 0
    is_default: bool = False


class PricingSystemResponse(PricingSystemCreate):
    id: int
    class Config:
        from_attributes = True


# 注文
# 料金カテゴリのタグ（charges.ChargeCategory の値）
DerivedCategoryTag = Literal["set_fee", "extension_fee", "nomination_fee", "douhan_fee", "companion_fee"]
CategoryTag = Literal[
    "set_fee", "extension_fee", "nomination_fee", "douhan_fee", "companion_fee", "menu_item", "adjustment",
]


class OrderItem(BaseModel):
    """createOrder に渡す明細1行（guest_id / cast_id は呼び出し側で指定）"""
    menu_item_id: Optional[int] = None
    category: Optional[CategoryTag] = None
    name: Optional[str] = None
    quantity: int = 1
    amount: int = 0  # 単価
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class OrderCreate(BaseModel):
    items: List[OrderItem]
    guest_id: Optional[int] = None
    cast_id: Optional[int] = None


class OrderUpdate(BaseModel):
    quantity: Optional[int] = None
    amount: Optional[int] = None
    status: Optional[str] = None
    cast_id: Optional[int] = None
    guest_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class PlannedCharge(OrderItem):
    """料金再計算で作成する明細"""
    guest_id: Optional[int] = None
    cast_id: Optional[int] = None


class ChargePlan(BaseModel):
    """再計算結果：削除するカテゴリと作り直す明細"""
    categories: List[DerivedCategoryTag]
    charges: List[PlannedCharge]
    duration_minutes: int = 0
    extension_count: int = 0


class OrderResponse(BaseModel):
    id: Union[int, str]  # 楽観的UIの仮IDは "temp-..."
    session_id: Optional[int] = None
    menu_item_id: Optional[int] = None
    category: Optional[str] = None
    item_name: Optional[str] = None
    unit_price: int = 0
    quantity: int = 0
    cast_id: Optional[int] = None
    guest_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    class Config:
        from_attributes = True

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


# セッション
class SessionCreate(BaseModel):
    table_id: Optional[int] = None
    main_guest_id: Optional[int] = None
    pricing_system_id: Optional[int] = None
    start_time: Optional[datetime] = None


class SessionUpdate(BaseModel):
    table_id: Optional[int] = None
    guest_count: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    pricing_system_id: Optional[int] = None
    main_guest_id: Optional[int] = None


class SessionTimesUpdate(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class SessionGuestCreate(BaseModel):
    guest_id: int


class SessionGuestResponse(BaseModel):
    id: Union[int, str]
    guest_id: Optional[int] = None
    guest_name: Optional[str] = None
    class Config:
        from_attributes = True


class SessionResponse(BaseModel):
    id: int
    table_id: Optional[int] = None
    guest_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    pricing_system_id: Optional[int] = None
    main_guest_id: Optional[int] = None
    status: str
    total_amount: Optional[int] = 0
    guests: List[SessionGuestResponse] = []
    orders: List[OrderResponse] = []
    class Config:
        from_attributes = True


# 伝票
class TotalsResponse(BaseModel):
    subtotal: int
    service_charge: int
    tax: int
    total: int
    rounded_total: int
    difference: int


class FeeWindow(BaseModel):
    start: datetime
    end: datetime


class SlipResponse(BaseModel):
    session: SessionResponse
    totals: TotalsResponse
    fee_schedule: Dict[str, FeeWindow] = {}


class RecalculateRequest(BaseModel):
    """再計算前にヘッダーを保存する場合の値（HH:MM）"""
    date: Optional[str] = None  # YYYY-MM-DD
    start_time: str
    end_time: str
    table_id: Optional[int] = None
    guest_count: Optional[int] = None
    pricing_system_id: Optional[int] = None
    main_guest_id: Optional[int] = None


class MessageResponse(BaseModel):
    message: str
    detail: Optional[Any] = None
