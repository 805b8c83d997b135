"""
セッション・注文の保存処理

SlipBackend は伝票（SlipReconciler）から見た保存先の窓口。
DatabaseBackend はサーバー側で SQLAlchemy を直接操作する実装で、
client.ApiBackend は同じ操作を HTTP 経由で行う。
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from charges import CAST_FEE_CATEGORIES, ChargeCategory, category_for_name, category_of
from errors import NotFoundError, PersistenceError
from models import (
    MenuItem, Order, PricingSystem, Profile, SessionGuest, SessionModel, Store, Table,
)
from schemas import (
    ChargePlan, OrderItem, OrderResponse, PricingSystemResponse, ProfileResponse,
    SessionResponse, StoreSettings, TableResponse,
)
from totals import calculate_totals

logger = logging.getLogger(__name__)


class SlipBackend(ABC):
    """伝票が利用する保存先の操作一覧"""

    @abstractmethod
    def get_session_by_id(self, session_id) -> Optional[SessionResponse]:
        """注文・ゲスト込みでセッションを取得（存在しなければ None）"""

    @abstractmethod
    def update_session(self, session_id, fields: Dict):
        """table_id / guest_count / start_time / end_time / pricing_system_id / main_guest_id の部分更新"""

    @abstractmethod
    def update_session_times(self, session_id, start_time: Optional[datetime], end_time: Optional[datetime]):
        """入店・退店時間を更新（start_time=None は変更なし、end_time=None は退店時間をクリア）"""

    @abstractmethod
    def close_session(self, session_id):
        pass

    @abstractmethod
    def reopen_session(self, session_id):
        pass

    @abstractmethod
    def delete_session(self, session_id):
        """セッション・注文・ゲストをまとめて削除"""

    @abstractmethod
    def create_order(self, session_id, items: List[OrderItem], guest_id=None, cast_id=None) -> List[OrderResponse]:
        pass

    @abstractmethod
    def update_order(self, order_id, fields: Dict):
        pass

    @abstractmethod
    def delete_order(self, order_id):
        pass

    @abstractmethod
    def delete_orders_by_name(self, session_id, name: str):
        pass

    @abstractmethod
    def add_guest_to_session(self, session_id, guest_id):
        pass

    @abstractmethod
    def remove_guest_from_session(self, session_id, guest_id):
        pass

    @abstractmethod
    def apply_charge_plan(self, session_id, plan: ChargePlan):
        """再計算結果の反映（対象カテゴリを削除して作り直す）"""

    @abstractmethod
    def get_pricing_systems(self) -> List[PricingSystemResponse]:
        pass

    @abstractmethod
    def get_tables(self) -> List[TableResponse]:
        pass

    @abstractmethod
    def get_casts(self) -> List[ProfileResponse]:
        pass

    @abstractmethod
    def get_guests(self) -> List[ProfileResponse]:
        pass

    @abstractmethod
    def get_store_settings(self) -> StoreSettings:
        pass


def resolve_category(item: OrderItem) -> ChargeCategory:
    if item.category:
        return ChargeCategory(item.category)
    if item.menu_item_id:
        return ChargeCategory.MENU_ITEM
    return category_for_name(item.name) or ChargeCategory.ADJUSTMENT


class DatabaseBackend(SlipBackend):
    """SQLAlchemy セッションを使う実装（1リクエスト = 1インスタンス）"""

    SESSION_FIELDS = ("table_id", "guest_count", "start_time", "end_time", "pricing_system_id", "main_guest_id")
    ORDER_FIELDS = {
        "quantity": "quantity",
        "amount": "unit_price",
        "status": "status",
        "cast_id": "cast_id",
        "guest_id": "guest_id",
        "start_time": "start_time",
        "end_time": "end_time",
    }

    def __init__(self, db: Session, store_id: Optional[int] = None):
        self.db = db
        self.store_id = store_id

    @contextmanager
    def _transaction(self, action: str):
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("%sに失敗しました: %s", action, e, exc_info=True)
            raise PersistenceError(f"{action}に失敗しました", detail=str(e)) from e
        except Exception:
            self.db.rollback()
            raise

    def _scoped(self, model):
        query = self.db.query(model)
        if self.store_id:
            query = query.filter(model.store_id == self.store_id)
        return query

    def _get_session(self, session_id) -> SessionModel:
        session = self._scoped(SessionModel).filter(SessionModel.id == session_id).first()
        if not session:
            raise NotFoundError("Session not found", detail={"session_id": session_id})
        return session

    def _get_order(self, order_id) -> Order:
        order = self._scoped(Order).filter(Order.id == order_id).first()
        if not order:
            raise NotFoundError("Order not found", detail={"order_id": order_id})
        return order

    def get_store(self) -> Optional[Store]:
        if not self.store_id:
            return None
        return self.db.query(Store).filter(Store.id == self.store_id).first()

    # ========================
    # セッション
    # ========================

    def get_session_by_id(self, session_id) -> Optional[SessionResponse]:
        session = self._scoped(SessionModel).filter(SessionModel.id == session_id).first()
        if not session:
            return None
        return SessionResponse.model_validate(session)

    def create_session(self, table_id=None, main_guest_id=None, pricing_system_id=None, start_time=None) -> SessionResponse:
        with self._transaction("セッション作成"):
            table = None
            if table_id:
                table = self._scoped(Table).filter(Table.id == table_id).first()
                if not table:
                    raise NotFoundError("Table not found", detail={"table_id": table_id})
            # 料金システム未指定なら店舗のデフォルト
            if pricing_system_id is None:
                default_system = self._scoped(PricingSystem).filter(PricingSystem.is_default.is_(True)).first()
                if default_system:
                    pricing_system_id = default_system.id

            session = SessionModel(
                store_id=self.store_id,
                table_id=table_id,
                guest_count=0,
                main_guest_id=main_guest_id,
                pricing_system_id=pricing_system_id,
                start_time=start_time or datetime.now(),
                status="active",
            )
            self.db.add(session)
            if table:
                table.status = "occupied"
        self.db.refresh(session)
        logger.info("session created: id=%s table=%s", session.id, table_id)
        return SessionResponse.model_validate(session)

    def list_sessions(self, status: str) -> List[SessionResponse]:
        query = self._scoped(SessionModel).filter(SessionModel.status == status)
        if status == "completed":
            query = query.order_by(SessionModel.end_time.desc())
        return [SessionResponse.model_validate(s) for s in query.all()]

    def update_session(self, session_id, fields: Dict):
        with self._transaction("セッション更新"):
            session = self._get_session(session_id)
            for key in self.SESSION_FIELDS:
                if key in fields:
                    setattr(session, key, fields[key])

    def update_session_times(self, session_id, start_time, end_time):
        with self._transaction("時間の更新"):
            session = self._get_session(session_id)
            if start_time is not None:
                session.start_time = start_time
            session.end_time = end_time

    def close_session(self, session_id):
        with self._transaction("会計"):
            session = self._get_session(session_id)
            totals = calculate_totals(session.orders, self.get_store_settings())
            session.status = "completed"
            session.end_time = session.end_time or datetime.now()
            session.total_amount = totals.rounded_total
            # 接客中のキャスト料金を終了に
            for order in session.orders:
                if order.cast_id is not None and category_of(order) in CAST_FEE_CATEGORIES:
                    order.status = "ended"
            if session.table:
                session.table.status = "available"
        logger.info("session closed: id=%s total=%s", session_id, totals.rounded_total)

    def reopen_session(self, session_id):
        with self._transaction("セッション再開"):
            session = self._get_session(session_id)
            session.status = "active"
            if session.table:
                session.table.status = "occupied"

    def delete_session(self, session_id):
        with self._transaction("セッション削除"):
            session = self._get_session(session_id)
            if session.table and session.status == "active":
                session.table.status = "available"
            # orders / session_guests は cascade で削除
            self.db.delete(session)
        logger.info("session deleted: id=%s", session_id)

    # ========================
    # 注文
    # ========================

    def _build_order(self, session: SessionModel, item: OrderItem, guest_id, cast_id) -> Order:
        category = resolve_category(item)
        name = item.name or category.label or "料金"
        unit_price = item.amount

        if category == ChargeCategory.MENU_ITEM:
            menu_item = self._scoped(MenuItem).filter(MenuItem.id == item.menu_item_id).first()
            if not menu_item:
                raise NotFoundError("Menu item not found", detail={"menu_item_id": item.menu_item_id})
            name = item.name or menu_item.name
            unit_price = menu_item.price
            # 在庫管理
            if menu_item.stock_enabled and (menu_item.stock or 0) > 0:
                menu_item.stock = max(0, menu_item.stock - item.quantity)

        return Order(
            store_id=session.store_id,
            session_id=session.id,
            menu_item_id=item.menu_item_id if category == ChargeCategory.MENU_ITEM else None,
            category=category.value,
            item_name=name,
            unit_price=unit_price,
            quantity=item.quantity,
            guest_id=guest_id,
            cast_id=cast_id,
            start_time=item.start_time,
            end_time=item.end_time,
            status="pending",
        )

    def create_order(self, session_id, items, guest_id=None, cast_id=None) -> List[OrderResponse]:
        with self._transaction("注文の追加"):
            session = self._get_session(session_id)
            orders = [self._build_order(session, item, guest_id, cast_id) for item in items]
            self.db.add_all(orders)
        for order in orders:
            self.db.refresh(order)
        return [OrderResponse.model_validate(o) for o in orders]

    def update_order(self, order_id, fields: Dict):
        with self._transaction("注文の更新"):
            order = self._get_order(order_id)
            for key, column in self.ORDER_FIELDS.items():
                if key in fields:
                    setattr(order, column, fields[key])

    def delete_order(self, order_id):
        with self._transaction("注文の削除"):
            order = self._get_order(order_id)
            # 在庫を戻す
            if order.menu_item and order.menu_item.stock_enabled:
                order.menu_item.stock = (order.menu_item.stock or 0) + (order.quantity or 0)
            self.db.delete(order)

    def _orders_named(self, session_id, name):
        query = self.db.query(Order).filter(Order.session_id == session_id)
        category = category_for_name(name)
        if category:
            return query.filter(or_(
                Order.category == category.value,
                (Order.category.is_(None)) & (Order.menu_item_id.is_(None)) & (Order.item_name == name),
            ))
        return query.filter(Order.item_name == name, Order.menu_item_id.is_(None))

    def delete_orders_by_name(self, session_id, name: str):
        with self._transaction("注文の削除"):
            self._get_session(session_id)
            self._orders_named(session_id, name).delete(synchronize_session=False)

    def apply_charge_plan(self, session_id, plan: ChargePlan) -> List[OrderResponse]:
        """削除と再作成を1トランザクションで行う"""
        with self._transaction("料金の再計算"):
            session = self._get_session(session_id)
            for value in plan.categories:
                name = ChargeCategory(value).label
                self._orders_named(session_id, name).delete(synchronize_session=False)
            orders = [
                self._build_order(session, charge, charge.guest_id, charge.cast_id)
                for charge in plan.charges
            ]
            self.db.add_all(orders)
        self.db.expire_all()
        logger.info(
            "charges recalculated: session=%s duration=%s extensions=%s created=%s",
            session_id, plan.duration_minutes, plan.extension_count, len(orders),
        )
        return [OrderResponse.model_validate(o) for o in orders]

    # ========================
    # ゲスト
    # ========================

    def add_guest_to_session(self, session_id, guest_id):
        with self._transaction("ゲストの追加"):
            self._get_session(session_id)
            guest = self._scoped(Profile).filter(Profile.id == guest_id, Profile.role == "guest").first()
            if not guest:
                raise NotFoundError("Guest not found", detail={"guest_id": guest_id})
            existing = self.db.query(SessionGuest).filter(
                SessionGuest.session_id == session_id,
                SessionGuest.guest_id == guest_id,
            ).first()
            if existing:
                # すでに存在する場合は何もしない
                logger.info("guest already seated: session=%s guest=%s", session_id, guest_id)
                return
            self.db.add(SessionGuest(session_id=session_id, guest_id=guest_id))

    def remove_guest_from_session(self, session_id, guest_id):
        """guest_id はプロフィールID（見つからなければ session_guests.id として扱う）"""
        with self._transaction("ゲストの削除"):
            self._get_session(session_id)
            query = self.db.query(SessionGuest).filter(SessionGuest.session_id == session_id)
            session_guest = query.filter(SessionGuest.guest_id == guest_id).first()
            if not session_guest:
                session_guest = query.filter(SessionGuest.id == guest_id).first()
            if not session_guest:
                raise NotFoundError("Session guest not found", detail={"guest_id": guest_id})
            self.db.delete(session_guest)

    # ========================
    # 参照データ
    # ========================

    def get_pricing_systems(self) -> List[PricingSystemResponse]:
        return [PricingSystemResponse.model_validate(p) for p in self._scoped(PricingSystem).all()]

    def get_tables(self) -> List[TableResponse]:
        return [TableResponse.model_validate(t) for t in self._scoped(Table).all()]

    def _profiles(self, role, statuses=None):
        query = self._scoped(Profile).filter(Profile.role == role)
        if statuses:
            query = query.filter(Profile.status.in_(statuses))
        return [ProfileResponse.model_validate(p) for p in query.order_by(Profile.display_name).all()]

    def get_casts(self) -> List[ProfileResponse]:
        # 在籍中・体入のみ
        return self._profiles("cast", ["在籍中", "体入"])

    def get_guests(self) -> List[ProfileResponse]:
        return self._profiles("guest")

    def get_store_settings(self) -> StoreSettings:
        store = self.get_store()
        if not store:
            return StoreSettings()
        return StoreSettings.model_validate(store)

    def update_store_settings(self, fields: Dict) -> StoreSettings:
        store = self.get_store()
        if not store:
            raise NotFoundError("Store not found")
        with self._transaction("設定の更新"):
            for key, value in fields.items():
                if value is not None:
                    setattr(store, key, value)
        return StoreSettings.model_validate(store)
