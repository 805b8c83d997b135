"""
データベースモデル
店舗（テナント）・テーブル・プロフィール・料金システム・セッション・注文
"""

from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from config import DEFAULT_ROUNDING_UNIT, DEFAULT_SERVICE_CHARGE_RATE, DEFAULT_TAX_RATE
from database import Base


class Store(Base):
    """店舗（テナント）と伝票設定"""
    __tablename__ = "stores"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, index=True)
    username = Column(String, unique=True, index=True, nullable=True)  # ログインユーザー名
    hashed_password = Column(String, nullable=True)
    manager_pin = Column(String, nullable=True)  # 経営者PIN
    staff_pin = Column(String, nullable=True)  # スタッフPIN
    staff_permissions = Column(JSON, nullable=True)  # ページキー -> none / view / edit
    status = Column(String, default="active")  # active, suspended
    # 伝票設定
    slip_rounding_enabled = Column(Boolean, default=False)
    slip_rounding_method = Column(String, default="round")  # round, ceil, floor
    slip_rounding_unit = Column(Integer, default=DEFAULT_ROUNDING_UNIT)
    service_charge_rate = Column(Integer, default=DEFAULT_SERVICE_CHARGE_RATE)  # サービス料（%）
    tax_rate = Column(Integer, default=DEFAULT_TAX_RATE)  # 消費税（%）
    created_at = Column(DateTime, default=datetime.now)


class Table(Base):
    __tablename__ = "tables"
    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=True, index=True)
    name = Column(String, index=True)
    status = Column(String, default="available")  # available, occupied
    is_vip = Column(Boolean, default=False)
    sessions = relationship("SessionModel", back_populates="table")


class Profile(Base):
    """キャスト・ゲスト共通のプロフィール"""
    __tablename__ = "profiles"
    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=True, index=True)
    display_name = Column(String, index=True)  # キャストは源氏名
    role = Column(String, index=True)  # cast, guest
    status = Column(String, default="在籍中")  # 在籍中, 体入, 退店
    created_at = Column(DateTime, default=datetime.now)


class MenuItem(Base):
    __tablename__ = "menu_items"
    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=True, index=True)
    name = Column(String, index=True)
    category = Column(String, index=True)
    price = Column(Integer)
    stock_enabled = Column(Boolean, default=False)
    stock = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.now)
    orders = relationship("Order", back_populates="menu_item")


class PricingSystem(Base):
    """料金システム（セット・延長・指名・場内・同伴）"""
    __tablename__ = "pricing_systems"
    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=True, index=True)
    name = Column(String)
    set_fee = Column(Integer, default=0)
    set_duration_minutes = Column(Integer, default=60)
    extension_fee = Column(Integer, default=0)
    extension_duration_minutes = Column(Integer, default=30)
    nomination_fee = Column(Integer, default=0)
    nomination_set_duration_minutes = Column(Integer, nullable=True)  # 同伴料も同じ単位
    companion_fee = Column(Integer, default=0)
    companion_set_duration_minutes = Column(Integer, nullable=True)
    douhan_fee = Column(Integer, default=0)
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.now)


class SessionModel(Base):
    """テーブルセッション（1組の来店）"""
    __tablename__ = "sessions"
    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=True, index=True)
    table_id = Column(Integer, ForeignKey("tables.id"), nullable=True)
    guest_count = Column(Integer, default=0)
    start_time = Column(DateTime, default=datetime.now)
    end_time = Column(DateTime, nullable=True)  # None = 在席中
    pricing_system_id = Column(Integer, ForeignKey("pricing_systems.id"), nullable=True)
    main_guest_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    status = Column(String, default="active")  # active, completed
    total_amount = Column(Integer, default=0)  # 会計時に確定
    created_at = Column(DateTime, default=datetime.now)

    table = relationship("Table", back_populates="sessions")
    pricing_system = relationship("PricingSystem")
    guests = relationship(
        "SessionGuest", back_populates="session",
        cascade="all, delete-orphan", order_by="SessionGuest.id",
    )
    orders = relationship(
        "Order", back_populates="session",
        cascade="all, delete-orphan", order_by=lambda: [Order.created_at, Order.id],
    )


class SessionGuest(Base):
    __tablename__ = "session_guests"
    __table_args__ = (UniqueConstraint("session_id", "guest_id", name="uq_session_guest"),)
    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), index=True)
    guest_id = Column(Integer, ForeignKey("profiles.id"))
    created_at = Column(DateTime, default=datetime.now)

    session = relationship("SessionModel", back_populates="guests")
    guest = relationship("Profile")

    @property
    def guest_name(self):
        return self.guest.display_name if self.guest else None


class Order(Base):
    """伝票明細（料金・メニュー・割引）"""
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=True)
    category = Column(String, nullable=True, index=True)  # ChargeCategory の値
    item_name = Column(String, nullable=True)
    unit_price = Column(Integer, default=0)  # 割引はマイナス
    quantity = Column(Integer, default=1)
    cast_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    guest_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    status = Column(String, default="pending")  # pending, served, ended
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.now)

    session = relationship("SessionModel", back_populates="orders")
    menu_item = relationship("MenuItem", back_populates="orders")
