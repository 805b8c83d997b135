import copy
import itertools
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import CurrentUser, get_current_user, get_password_hash
from charges import category_of
from database import Base, get_db
from errors import PartialBatchFailure, PersistenceError
from main import app
from models import PricingSystem, Profile, Store, Table
from repository import DatabaseBackend, SlipBackend, resolve_category
from schemas import (
    OrderResponse, PricingSystemResponse, ProfileResponse, SessionGuestResponse,
    SessionResponse, StoreSettings, TableResponse,
)

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(db):
    store = Store(
        name="テスト店舗",
        username="test",
        hashed_password=get_password_hash("secret-password"),
        manager_pin="1234",
        staff_pin="0000",
    )
    db.add(store)
    db.commit()
    db.refresh(store)
    return store


@pytest.fixture
def pricing_system(db, store):
    pricing = PricingSystem(
        store_id=store.id,
        name="通常",
        set_fee=5000,
        set_duration_minutes=60,
        extension_fee=3000,
        extension_duration_minutes=30,
        nomination_fee=2000,
        companion_fee=1000,
        douhan_fee=3000,
        is_default=True,
    )
    db.add(pricing)
    db.commit()
    db.refresh(pricing)
    return pricing


@pytest.fixture
def table(db, store):
    table = Table(store_id=store.id, name="1")
    db.add(table)
    db.commit()
    db.refresh(table)
    return table


@pytest.fixture
def profiles(db, store):
    rows = [
        Profile(store_id=store.id, display_name="あかり", role="cast"),
        Profile(store_id=store.id, display_name="ゆい", role="cast", status="退店"),
        Profile(store_id=store.id, display_name="田中様", role="guest"),
        Profile(store_id=store.id, display_name="佐藤様", role="guest"),
    ]
    db.add_all(rows)
    db.commit()
    return {p.display_name: p for p in rows}


@pytest.fixture
def backend(db, store):
    return DatabaseBackend(db, store.id)


@pytest.fixture
def client(db, store):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: CurrentUser("test", "admin", store.id)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


# ========================
# 伝票テスト用のメモリ上の保存先
# ========================

class FakeBackend(SlipBackend):
    """
    メモリ上の SlipBackend。fail_on にメソッド名を入れるとその呼び出しで PersistenceError。
    calls に呼び出し履歴（メソッド名）が残る。
    """

    def __init__(self, session: SessionResponse, pricing_systems=(), casts=(), guests=(), settings=None):
        self.session = session
        self.pricing_systems = list(pricing_systems)
        self.casts = list(casts)
        self.guests = list(guests)
        self.settings = settings or StoreSettings()
        self.calls = []
        self.fail_on = set()
        self._ids = itertools.count(1000)

    def _call(self, name):
        self.calls.append(name)
        if name in self.fail_on:
            raise PersistenceError(f"{name} failed")

    def mutations(self):
        return [c for c in self.calls if not c.startswith("get_")]

    def _order(self, order_id):
        for order in self.session.orders:
            if order.id == order_id:
                return order
        raise PersistenceError("Order not found")

    def get_session_by_id(self, session_id):
        self._call("get_session_by_id")
        if self.session is None or self.session.id != session_id:
            return None
        return copy.deepcopy(self.session)

    def update_session(self, session_id, fields):
        self._call("update_session")
        for key, value in fields.items():
            setattr(self.session, key, value)

    def update_session_times(self, session_id, start_time, end_time):
        self._call("update_session_times")
        if start_time is not None:
            self.session.start_time = start_time
        self.session.end_time = end_time

    def close_session(self, session_id):
        self._call("close_session")
        self.session.status = "completed"
        self.session.end_time = self.session.end_time or datetime(2026, 10, 19, 23, 0)

    def reopen_session(self, session_id):
        self._call("reopen_session")
        self.session.status = "active"

    def delete_session(self, session_id):
        self._call("delete_session")
        self.session = None

    def create_order(self, session_id, items, guest_id=None, cast_id=None):
        self._call("create_order")
        created = []
        for item in items:
            category = resolve_category(item)
            order = OrderResponse(
                id=next(self._ids),
                session_id=session_id,
                menu_item_id=item.menu_item_id,
                category=category.value,
                item_name=item.name or category.label,
                unit_price=item.amount,
                quantity=item.quantity,
                guest_id=guest_id,
                cast_id=cast_id,
                start_time=item.start_time,
                end_time=item.end_time,
                status="pending",
                created_at=datetime(2026, 10, 19, 20, 0),
            )
            self.session.orders.append(order)
            created.append(order)
        return created

    def update_order(self, order_id, fields):
        self._call("update_order")
        order = self._order(order_id)
        for key, value in fields.items():
            setattr(order, "unit_price" if key == "amount" else key, value)

    def delete_order(self, order_id):
        self._call("delete_order")
        self._order(order_id)
        self.session.orders = [o for o in self.session.orders if o.id != order_id]

    def delete_orders_by_name(self, session_id, name):
        self._call("delete_orders_by_name")
        self.session.orders = [o for o in self.session.orders if category_of(o).label != name]

    def apply_charge_plan(self, session_id, plan):
        self.calls.append("apply_charge_plan")
        categories = list(plan.categories)
        self.session.orders = [o for o in self.session.orders if category_of(o).value not in categories]
        if "apply_charge_plan" in self.fail_on:
            raise PartialBatchFailure("apply_charge_plan failed", completed_steps=len(categories))
        for charge in plan.charges:
            self.create_order(session_id, [charge], charge.guest_id, charge.cast_id)

    def add_guest_to_session(self, session_id, guest_id):
        self._call("add_guest_to_session")
        name = next((g.display_name for g in self.guests if g.id == guest_id), None)
        self.session.guests.append(SessionGuestResponse(id=next(self._ids), guest_id=guest_id, guest_name=name))

    def remove_guest_from_session(self, session_id, guest_id):
        self._call("remove_guest_from_session")
        self.session.guests = [g for g in self.session.guests if g.guest_id != guest_id]

    def get_pricing_systems(self):
        self._call("get_pricing_systems")
        return list(self.pricing_systems)

    def get_tables(self):
        self._call("get_tables")
        return [TableResponse(id=1, name="1", status="occupied")]

    def get_casts(self):
        self._call("get_casts")
        return list(self.casts)

    def get_guests(self):
        self._call("get_guests")
        return list(self.guests)

    def get_store_settings(self):
        self._call("get_store_settings")
        return self.settings


@pytest.fixture
def standard_pricing():
    return PricingSystemResponse(
        id=1,
        name="通常",
        set_fee=5000,
        set_duration_minutes=60,
        extension_fee=3000,
        extension_duration_minutes=30,
        nomination_fee=2000,
        companion_fee=1000,
        douhan_fee=3000,
        is_default=True,
    )


@pytest.fixture
def fake_session():
    return SessionResponse(
        id=1,
        table_id=1,
        guest_count=0,
        start_time=datetime(2026, 10, 19, 20, 0),
        end_time=None,
        pricing_system_id=1,
        status="active",
    )


@pytest.fixture
def fake_backend(fake_session, standard_pricing):
    return FakeBackend(
        fake_session,
        pricing_systems=[standard_pricing],
        casts=[ProfileResponse(id=10, display_name="あかり", role="cast", status="在籍中")],
        guests=[
            ProfileResponse(id=20, display_name="田中様", role="guest"),
            ProfileResponse(id=21, display_name="佐藤様", role="guest"),
        ],
    )
