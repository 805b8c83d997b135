"""
伝票（1セッション分の明細）の編集

SlipReconciler は1つの伝票を開いている間の状態（セッション・注文・参照データ）を持ち、
各操作で「ローカル状態を先に更新 → 保存処理 → 成功なら再読み込み / 失敗なら元に戻す」を行う。

    slip = SlipReconciler(DatabaseBackend(db, store_id), on_update=refresh_payroll)
    slip.load_session(session_id)
    slip.add_discount("常連割引", 1000)
    slip.totals().rounded_total

入力エラー（ValidationError）は保存処理の前に送出し、状態は変更しない。
保存の失敗（PersistenceError）は送出せず、notifications に記録して False を返す。
"""

import copy
import dataclasses
import itertools
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from charges import (
    CAST_FEE_CATEGORIES, ChargeCategory, cast_fee_blocks, category_of, derive_charges,
    fee_for, fee_schedule, initial_cast_fee_quantity,
)
from errors import GuestSelectionRequired, PersistenceError, ValidationError
from repository import SlipBackend
from schemas import (
    OrderItem, OrderResponse, PricingSystemResponse, ProfileResponse, SessionGuestResponse,
    SessionResponse, StoreSettings, TableResponse,
)
from totals import SlipTotals, calculate_totals

logger = logging.getLogger(__name__)

TEMP_PREFIX = "temp-"

# 未指定を表す（None は「ゲストなし」の意味で使う）
_UNSET = object()


def parse_hhmm(value: str) -> time:
    try:
        hours, minutes = value.strip().split(":")
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError):
        raise ValidationError("時刻は HH:MM で入力してください", detail={"value": value})


def format_hhmm(value: Optional[datetime]) -> str:
    return value.strftime("%H:%M") if value else ""


def roll_forward(value: datetime, after: Optional[datetime]) -> datetime:
    """after より前の時刻は翌日扱い"""
    if after is not None and value < after:
        return value + timedelta(days=1)
    return value


def build_window(base_date: date, start: str, end: str) -> Tuple[Optional[datetime], Optional[datetime]]:
    """営業日の HH:MM から日時を作る。退店が入店より前なら翌日扱い"""
    start_dt = datetime.combine(base_date, parse_hhmm(start)) if start else None
    end_dt = None
    if end and end.strip():
        end_dt = datetime.combine(base_date, parse_hhmm(end))
        end_dt = roll_forward(end_dt, start_dt)
    return start_dt, end_dt


def is_temp_id(value) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_PREFIX)


@dataclass
class HeaderFields:
    """ヘッダー編集欄（時間は HH:MM、business_date は営業日）"""
    table_id: Optional[int] = None
    guest_count: int = 0
    business_date: Optional[date] = None
    start_time: str = ""
    end_time: str = ""
    pricing_system_id: Optional[int] = None
    main_guest_id: Optional[int] = None

    @classmethod
    def from_session(cls, session: SessionResponse) -> "HeaderFields":
        return cls(
            table_id=session.table_id,
            guest_count=session.guest_count or 0,
            business_date=session.start_time.date() if session.start_time else None,
            start_time=format_hhmm(session.start_time),
            end_time=format_hhmm(session.end_time),
            pricing_system_id=session.pricing_system_id,
            main_guest_id=session.main_guest_id,
        )


@dataclass
class Notice:
    message: str
    level: str = "info"  # info, error


@dataclass
class SlipState:
    session: Optional[SessionResponse] = None
    orders: List[OrderResponse] = field(default_factory=list)
    tables: List[TableResponse] = field(default_factory=list)
    pricing_systems: List[PricingSystemResponse] = field(default_factory=list)
    casts: List[ProfileResponse] = field(default_factory=list)
    guests: List[ProfileResponse] = field(default_factory=list)
    store_settings: StoreSettings = field(default_factory=StoreSettings)
    header: HeaderFields = field(default_factory=HeaderFields)
    editing_header: bool = False
    editing_order_ids: Set = field(default_factory=set)
    pending_cast_fee: Optional[Tuple[ChargeCategory, int]] = None


class SlipReconciler:
    """1つの伝票の表示・編集"""

    def __init__(
        self,
        backend: SlipBackend,
        on_update: Optional[Callable[[], None]] = None,
        on_session_deleted: Optional[Callable[[], None]] = None,
    ):
        self.backend = backend
        self.on_update = on_update
        self.on_session_deleted = on_session_deleted
        self.state = SlipState()
        self.notifications: List[Notice] = []
        self._temp_ids = itertools.count(1)

    # ========================
    # 参照
    # ========================

    @property
    def session(self) -> Optional[SessionResponse]:
        return self.state.session

    @property
    def orders(self) -> List[OrderResponse]:
        return self.state.orders

    @property
    def header(self) -> HeaderFields:
        return self.state.header

    @property
    def pricing_system(self) -> Optional[PricingSystemResponse]:
        session = self.state.session
        if session is None or session.pricing_system_id is None:
            return None
        return self._find_pricing_system(session.pricing_system_id)

    def _find_pricing_system(self, pricing_system_id) -> Optional[PricingSystemResponse]:
        for pricing_system in self.state.pricing_systems:
            if pricing_system.id == pricing_system_id:
                return pricing_system
        return None

    def totals(self) -> SlipTotals:
        # 表示のたびに計算する（キャッシュしない）
        return calculate_totals(self.state.orders, self.state.store_settings)

    def fee_schedule(self):
        return fee_schedule(self.state.session, self.pricing_system, self.state.orders)

    def orders_in(self, category: ChargeCategory) -> List[OrderResponse]:
        return [o for o in self.state.orders if category_of(o) == category]

    def find_order(self, order_id) -> Optional[OrderResponse]:
        for order in self.state.orders:
            if order.id == order_id:
                return order
        return None

    # ========================
    # 内部処理
    # ========================

    def _notify(self, message: str, level: str = "info"):
        self.notifications.append(Notice(message, level))

    def _require_session(self) -> SessionResponse:
        if self.state.session is None:
            raise ValidationError("伝票が読み込まれていません")
        return self.state.session

    def _require_pricing_system(self) -> PricingSystemResponse:
        pricing_system = self.pricing_system
        if pricing_system is None:
            raise ValidationError("料金システムが設定されていません")
        return pricing_system

    def _temp_id(self) -> str:
        return f"{TEMP_PREFIX}{next(self._temp_ids)}"

    def _temp_order(self, **values) -> OrderResponse:
        values.setdefault("created_at", datetime.now())
        return OrderResponse(id=self._temp_id(), session_id=self.state.session.id, status="pending", **values)

    def _snapshot(self):
        return copy.deepcopy((self.state.session, self.state.orders))

    def _restore(self, snapshot):
        self.state.session, self.state.orders = snapshot

    def _fire_update(self):
        if self.on_update:
            self.on_update()

    def _persist(self, snapshot, call: Callable[[], None], success: str, failure: str, multi_step: bool = False) -> bool:
        """
        保存処理を実行。成功なら再読み込み、失敗ならスナップショットに戻す。
        multi_step は複数回の保存を行う処理で、途中まで反映されている可能性があるため
        失敗時もサーバーの状態を読み直す。
        """
        try:
            call()
        except PersistenceError as e:
            logger.error("%s: %s", failure, e.message, exc_info=True)
            self._restore(snapshot)
            self._notify(failure, "error")
            if multi_step:
                self.reload()
            return False
        self._notify(success)
        self.reload()
        self._fire_update()
        return True

    def _set_session(self, session: SessionResponse):
        self.state.session = session
        self.state.orders = list(session.orders)
        if not self.state.editing_header:
            self.state.header = HeaderFields.from_session(session)

    def _business_date(self, header: Optional[HeaderFields] = None) -> date:
        header = header or self.state.header
        if header.business_date:
            return header.business_date
        if self.state.session and self.state.session.start_time:
            return self.state.session.start_time.date()
        return datetime.now().date()

    def _to_datetime(self, value):
        if value is None or isinstance(value, datetime):
            return value
        if value == "":
            return None
        return datetime.combine(self._business_date(), parse_hhmm(value))

    # ========================
    # 読み込み
    # ========================

    def load_session(self, session_id) -> bool:
        """セッションと参照データを読み込む。見つからなければ何も表示しない"""
        try:
            session = self.backend.get_session_by_id(session_id)
            if session is None:
                logger.warning("session not found: %s", session_id)
                self.state = SlipState()
                return False
            # 参照データは開いている間キャッシュする
            self.state.tables = self.backend.get_tables()
            self.state.pricing_systems = self.backend.get_pricing_systems()
            self.state.casts = self.backend.get_casts()
            self.state.guests = self.backend.get_guests()
            self.state.store_settings = self.backend.get_store_settings()
        except PersistenceError as e:
            logger.error("データの読み込みに失敗しました: %s", e.message)
            self._notify("データの読み込みに失敗しました", "error")
            return False

        self.state.editing_header = False
        self.state.editing_order_ids = set()
        self.state.pending_cast_fee = None
        self._set_session(session)
        return True

    def reload(self) -> bool:
        """セッションと注文を取り直す（マージせず置き換える）"""
        if self.state.session is None:
            return False
        try:
            session = self.backend.get_session_by_id(self.state.session.id)
        except PersistenceError as e:
            logger.error("reload failed: %s", e.message)
            self._notify("データの読み込みに失敗しました", "error")
            return False
        if session is None:
            return False
        self._set_session(session)
        return True

    # ========================
    # ヘッダー
    # ========================

    def begin_header_edit(self):
        self._require_session()
        self.state.editing_header = True

    def cancel_header_edit(self):
        if self.state.session:
            self.state.header = HeaderFields.from_session(self.state.session)
        self.state.editing_header = False

    def _header_with(self, changes: Dict) -> HeaderFields:
        """変更を反映したヘッダーの写し（検証が通るまで state には入れない）"""
        for key in changes:
            if not hasattr(self.state.header, key):
                raise ValidationError(f"不明な項目です: {key}")
        return dataclasses.replace(self.state.header, **changes)

    def _header_times(self, header: HeaderFields) -> Tuple[Optional[datetime], Optional[datetime]]:
        return build_window(self._business_date(header), header.start_time, header.end_time)

    def _header_fields(self, header: HeaderFields) -> Dict:
        return {
            "table_id": header.table_id,
            "guest_count": header.guest_count,
            "pricing_system_id": header.pricing_system_id,
            "main_guest_id": header.main_guest_id,
        }

    def save_header(self, **changes) -> bool:
        """テーブル・人数・入店/退店時間・料金システム・メインゲストを保存（注文は変更しない）"""
        session = self._require_session()
        header = self._header_with(changes)
        start_time, end_time = self._header_times(header)
        self.state.header = header

        fields = self._header_fields(header)
        if start_time is not None:
            fields["start_time"] = start_time
        fields["end_time"] = end_time

        snapshot = self._snapshot()
        for key, value in fields.items():
            setattr(session, key, value)

        saved = self._persist(
            snapshot,
            lambda: self.backend.update_session(session.id, fields),
            "詳細を更新しました",
            "更新に失敗しました",
        )
        if saved:
            self.state.editing_header = False
            self.state.header = HeaderFields.from_session(self.state.session)
        return saved

    # ========================
    # セット料金・延長料金
    # ========================

    def _add_fee(self, category: ChargeCategory, amount: int, quantity: int, guest_id=None) -> bool:
        session = self.state.session
        snapshot = self._snapshot()
        self.state.orders.append(self._temp_order(
            category=category.value,
            item_name=category.label,
            unit_price=amount,
            quantity=quantity,
            guest_id=guest_id,
        ))
        item = OrderItem(category=category.value, name=category.label, quantity=quantity, amount=amount)
        return self._persist(
            snapshot,
            lambda: self.backend.create_order(session.id, [item], guest_id, None),
            f"{category.label}を追加しました",
            "追加に失敗しました",
        )

    def add_set_fee(self, quantity: Optional[int] = None) -> bool:
        session = self._require_session()
        pricing_system = self._require_pricing_system()
        if quantity is None:
            quantity = session.guest_count or 0
        return self._add_fee(ChargeCategory.SET_FEE, pricing_system.set_fee, quantity)

    def add_extension_fee(self, quantity: Optional[int] = None) -> bool:
        session = self._require_session()
        pricing_system = self._require_pricing_system()
        if quantity is None:
            # 人数まとめのセット料金があればその数量、なければ人数
            shared = [o for o in self.orders_in(ChargeCategory.SET_FEE) if o.guest_id is None]
            quantity = shared[0].quantity if shared else (session.guest_count or 0)
        return self._add_fee(ChargeCategory.EXTENSION_FEE, pricing_system.extension_fee, quantity)

    def update_guest_set_fee_amount(self, guest_id: int, amount: int) -> bool:
        """ゲスト別のセット料金の金額を変更（なければ数量1で作成）"""
        session = self._require_session()
        if amount < 0:
            raise ValidationError("金額を正しく入力してください")
        for order in self.orders_in(ChargeCategory.SET_FEE):
            if order.guest_id == guest_id and not is_temp_id(order.id):
                return self.update_order(order.id, amount=amount)
        if guest_id not in [g.guest_id for g in session.guests]:
            logger.info("set fee for guest not seated: session=%s guest=%s", session.id, guest_id)
        return self._add_fee(ChargeCategory.SET_FEE, amount, 1, guest_id=guest_id)

    # ========================
    # 指名料・同伴料・場内料金
    # ========================

    def add_cast_fee(self, category: ChargeCategory, cast_id: int, guest_id=_UNSET) -> bool:
        """
        キャスト料金を追加する。

        卓にゲストがいる場合は対象ゲストの指定が必要で、guest_id を省略すると
        選択待ちにして GuestSelectionRequired を送出する（choose_cast_fee_guest で続行）。
        """
        session = self._require_session()
        category = ChargeCategory(category)
        if category not in CAST_FEE_CATEGORIES:
            raise ValidationError("キャスト料金の種類が不正です", detail={"category": category.value})
        pricing_system = self._require_pricing_system()

        roster_ids = [g.guest_id for g in session.guests]
        if guest_id is _UNSET:
            if roster_ids:
                self.state.pending_cast_fee = (category, cast_id)
                raise GuestSelectionRequired("ゲストを選択してください", detail={"guest_ids": roster_ids})
            guest_id = None
        elif guest_id is not None and guest_id not in roster_ids:
            raise ValidationError("この卓にいないゲストです", detail={"guest_id": guest_id})

        # 指名・同伴は入店〜退店、場内は時間なし・回数0（編集後に個別再計算）
        start_time = end_time = None
        if category != ChargeCategory.COMPANION_FEE:
            start_time, end_time = session.start_time, session.end_time
        quantity = initial_cast_fee_quantity(category, pricing_system, start_time, end_time)
        amount = fee_for(category, pricing_system)

        snapshot = self._snapshot()
        self.state.pending_cast_fee = None
        self.state.orders.append(self._temp_order(
            category=category.value,
            item_name=category.label,
            unit_price=amount,
            quantity=quantity,
            cast_id=cast_id,
            guest_id=guest_id,
            start_time=start_time,
            end_time=end_time,
        ))
        item = OrderItem(
            category=category.value,
            name=category.label,
            quantity=quantity,
            amount=amount,
            start_time=start_time,
            end_time=end_time,
        )
        return self._persist(
            snapshot,
            lambda: self.backend.create_order(session.id, [item], guest_id, cast_id),
            f"{category.label}を追加しました",
            "追加に失敗しました",
        )

    def choose_cast_fee_guest(self, guest_id: Optional[int]) -> bool:
        if self.state.pending_cast_fee is None:
            raise ValidationError("追加中のキャスト料金がありません")
        category, cast_id = self.state.pending_cast_fee
        return self.add_cast_fee(category, cast_id, guest_id)

    def cancel_cast_fee_selection(self):
        self.state.pending_cast_fee = None

    def recalculate_order(self, order_id, start_time, end_time, cast_id=_UNSET) -> bool:
        """1件のキャスト料金を、編集した開始・終了時刻から再計算して保存する"""
        session = self._require_session()
        pricing_system = self._require_pricing_system()
        order = self.find_order(order_id)
        if order is None or is_temp_id(order_id):
            raise ValidationError("注文が見つかりません", detail={"order_id": order_id})
        category = category_of(order)
        if category not in CAST_FEE_CATEGORIES:
            raise ValidationError("再計算できない料金です", detail={"category": category.value})
        if not start_time or not end_time:
            raise ValidationError("開始時刻と終了時刻を入力してください")

        if isinstance(start_time, datetime) and isinstance(end_time, datetime):
            window_start, window_end = start_time, end_time
        else:
            window_start, window_end = build_window(self._business_date(), start_time, end_time)
        count = cast_fee_blocks(category, pricing_system, window_start, window_end)
        if count == 0:
            raise ValidationError("時間の設定が不正です")

        fields = {
            "quantity": count,
            "amount": fee_for(category, pricing_system),
            "start_time": window_start,
            "end_time": window_end,
        }
        if cast_id is not _UNSET:
            fields["cast_id"] = cast_id
        logger.info("recalculate order=%s session=%s count=%s", order_id, session.id, count)
        return self._update_order(order, fields, "再計算しました")

    # ========================
    # 注文の編集・削除・割引
    # ========================

    def begin_order_edit(self, order_id):
        self.state.editing_order_ids.add(order_id)

    def cancel_order_edit(self, order_id):
        self.state.editing_order_ids.discard(order_id)

    UPDATABLE_FIELDS = ("quantity", "amount", "cast_id", "guest_id", "start_time", "end_time")

    def update_order(self, order_id, **fields) -> bool:
        """数量・単価・キャスト・ゲスト・時間の部分更新（時間は datetime か HH:MM）"""
        self._require_session()
        order = self.find_order(order_id)
        if order is None or is_temp_id(order_id):
            raise ValidationError("注文が見つかりません", detail={"order_id": order_id})
        for key in fields:
            if key not in self.UPDATABLE_FIELDS:
                raise ValidationError(f"更新できない項目です: {key}")
        if "start_time" in fields:
            fields["start_time"] = self._to_datetime(fields["start_time"])
        if "end_time" in fields:
            end_time = self._to_datetime(fields["end_time"])
            if end_time is not None and not isinstance(fields["end_time"], datetime):
                # HH:MM の終了時刻は開始時刻より前なら翌日
                start_time = fields.get("start_time") or order.start_time or self.state.session.start_time
                end_time = roll_forward(end_time, start_time)
            fields["end_time"] = end_time
        return self._update_order(order, fields, "更新しました")

    def _update_order(self, order: OrderResponse, fields: Dict, success: str) -> bool:
        snapshot = self._snapshot()
        for key, value in fields.items():
            setattr(order, "unit_price" if key == "amount" else key, value)
        saved = self._persist(
            snapshot,
            lambda: self.backend.update_order(order.id, fields),
            success,
            "更新に失敗しました",
        )
        if saved:
            self.state.editing_order_ids.discard(order.id)
        return saved

    def delete_order(self, order_id) -> bool:
        self._require_session()
        order = self.find_order(order_id)
        if order is None or is_temp_id(order_id):
            raise ValidationError("注文が見つかりません", detail={"order_id": order_id})

        snapshot = self._snapshot()
        self.state.orders = [o for o in self.state.orders if o.id != order_id]
        return self._persist(
            snapshot,
            lambda: self.backend.delete_order(order_id),
            f"{order.item_name or '注文'}を削除しました",
            "削除に失敗しました",
        )

    def add_discount(self, name: str, amount: int, is_subtractive: bool = True) -> bool:
        """割引（is_subtractive=True）または追加料金を1行追加する"""
        session = self._require_session()
        if not name or not name.strip() or amount is None or amount <= 0:
            raise ValidationError("割引名と割引額を入力してください")

        unit_price = -amount if is_subtractive else amount
        snapshot = self._snapshot()
        self.state.orders.append(self._temp_order(
            category=ChargeCategory.ADJUSTMENT.value,
            item_name=name,
            unit_price=unit_price,
            quantity=1,
        ))
        item = OrderItem(category=ChargeCategory.ADJUSTMENT.value, name=name, quantity=1, amount=unit_price)
        return self._persist(
            snapshot,
            lambda: self.backend.create_order(session.id, [item], None, None),
            "割引を追加しました" if is_subtractive else "料金を追加しました",
            "追加に失敗しました",
        )

    # ========================
    # ゲスト
    # ========================

    def _guest_name(self, guest_id) -> Optional[str]:
        for profile in self.state.guests:
            if profile.id == guest_id:
                return profile.display_name
        return None

    def add_guest(self, guest_id: int) -> bool:
        """ゲストを卓に追加し、人数+1・セット料金を1件作成する"""
        session = self._require_session()
        if any(g.guest_id == guest_id for g in session.guests):
            raise ValidationError("すでに追加されているゲストです", detail={"guest_id": guest_id})

        pricing_system = self.pricing_system
        new_count = (session.guest_count or 0) + 1
        snapshot = self._snapshot()
        session.guests.append(SessionGuestResponse(
            id=self._temp_id(), guest_id=guest_id, guest_name=self._guest_name(guest_id),
        ))
        session.guest_count = new_count
        set_fee_item = None
        if pricing_system is not None:
            self.state.orders.append(self._temp_order(
                category=ChargeCategory.SET_FEE.value,
                item_name=ChargeCategory.SET_FEE.label,
                unit_price=pricing_system.set_fee,
                quantity=1,
                guest_id=guest_id,
            ))
            set_fee_item = OrderItem(
                category=ChargeCategory.SET_FEE.value,
                name=ChargeCategory.SET_FEE.label,
                quantity=1,
                amount=pricing_system.set_fee,
            )

        def call():
            self.backend.add_guest_to_session(session.id, guest_id)
            self.backend.update_session(session.id, {"guest_count": new_count})
            if set_fee_item is not None:
                self.backend.create_order(session.id, [set_fee_item], guest_id, None)

        saved = self._persist(snapshot, call, "ゲストを追加しました", "追加に失敗しました", multi_step=True)
        if saved:
            self.state.header.guest_count = self.state.session.guest_count
        return saved

    def remove_guest(self, session_guest_id) -> bool:
        """
        ゲストを卓から外し、人数-1・そのゲストのセット料金を削除する。
        指名料などキャスト料金は残す（担当ゲストの付け替え・削除は手動）。
        """
        session = self._require_session()
        entry = next((g for g in session.guests if g.id == session_guest_id), None)
        if entry is None or is_temp_id(session_guest_id):
            raise ValidationError("ゲストが見つかりません", detail={"session_guest_id": session_guest_id})

        set_fee_ids = [
            o.id for o in self.orders_in(ChargeCategory.SET_FEE)
            if o.guest_id == entry.guest_id and not is_temp_id(o.id)
        ]
        new_count = max(0, (session.guest_count or 0) - 1)
        snapshot = self._snapshot()
        session.guests = [g for g in session.guests if g.id != session_guest_id]
        session.guest_count = new_count
        self.state.orders = [o for o in self.state.orders if o.id not in set_fee_ids]

        def call():
            self.backend.remove_guest_from_session(session.id, entry.guest_id)
            self.backend.update_session(session.id, {"guest_count": new_count})
            for order_id in set_fee_ids:
                self.backend.delete_order(order_id)

        saved = self._persist(snapshot, call, "ゲストを削除しました", "削除に失敗しました", multi_step=True)
        if saved:
            self.state.header.guest_count = self.state.session.guest_count
        return saved

    # ========================
    # 再計算
    # ========================

    def recalculate_all(self, **changes) -> bool:
        """
        ヘッダーと入店/退店時間を保存してから、セット・延長・指名・同伴・場内料金を作り直す。
        途中で失敗した場合は元に戻さず、サーバーの状態を読み直す。
        """
        session = self._require_session()
        header = self._header_with(changes)

        pricing_system = self._find_pricing_system(header.pricing_system_id)
        if pricing_system is None:
            raise ValidationError("料金システムが設定されていません")
        if not header.start_time or not header.end_time:
            raise ValidationError("入店時間と退店時間を設定してください")
        start_time, end_time = self._header_times(header)

        # 保存前に計算して検証する
        target = session.model_copy(update={
            "start_time": start_time,
            "end_time": end_time,
            "guest_count": header.guest_count or 0,
            "pricing_system_id": pricing_system.id,
        })
        # 料金システムを変えた場合、旧セット料金と同額の明細は新しい料金で作り直す
        current = self.pricing_system
        previous_set_fee = current.set_fee if current is not None else None
        plan = derive_charges(target, pricing_system, self.state.orders, previous_set_fee)
        self.state.header = header

        try:
            self.backend.update_session(session.id, self._header_fields(header))
            self.backend.update_session_times(session.id, start_time, end_time)
            self.backend.apply_charge_plan(session.id, plan)
        except PersistenceError as e:
            logger.error("再計算に失敗しました: session=%s %s", session.id, e.message, exc_info=True)
            self._notify("再計算に失敗しました", "error")
            self.reload()
            return False

        logger.info(
            "recalculated session=%s duration=%s extensions=%s charges=%s",
            session.id, plan.duration_minutes, plan.extension_count, len(plan.charges),
        )
        self.state.editing_header = False
        self._notify("料金を再計算しました")
        self.reload()
        self._fire_update()
        return True

    # ========================
    # 会計・再開・削除
    # ========================

    def checkout(self) -> bool:
        session = self._require_session()
        snapshot = self._snapshot()
        session.status = "completed"
        if session.end_time is None:
            session.end_time = datetime.now()
        return self._persist(
            snapshot,
            lambda: self.backend.close_session(session.id),
            "会計しました",
            "会計に失敗しました",
        )

    def reopen(self) -> bool:
        session = self._require_session()
        snapshot = self._snapshot()
        session.status = "active"
        return self._persist(
            snapshot,
            lambda: self.backend.reopen_session(session.id),
            "伝票を再開しました",
            "再開に失敗しました",
        )

    def delete_session(self) -> bool:
        session = self._require_session()
        try:
            self.backend.delete_session(session.id)
        except PersistenceError as e:
            logger.error("削除に失敗しました: session=%s %s", session.id, e.message)
            self._notify("削除に失敗しました", "error")
            return False

        self.state = SlipState()
        self._notify("伝票とセッションを削除しました")
        if self.on_session_deleted:
            self.on_session_deleted()
        self._fire_update()
        return True
