"""
Nightbase 伝票サーバー
FastAPI + SQLAlchemy + JWT認証
伝票（セッション・注文）の編集、料金の再計算、会計
"""

import logging
from datetime import date
from typing import List

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import CurrentUser, create_access_token, get_password_hash, require_page, resolve_role
from config import LOG_LEVEL
from database import Base, SessionLocal, engine, get_db
from errors import NotFoundError, PersistenceError, ValidationError
from models import MenuItem, PricingSystem, Profile, Store, Table
from repository import DatabaseBackend
from schemas import (
    ChargePlan, LoginRequest, MenuItemCreate, MenuItemResponse, MessageResponse, OrderCreate,
    OrderResponse, OrderUpdate, PricingSystemCreate, PricingSystemResponse, ProfileCreate,
    ProfileResponse, RecalculateRequest, SessionCreate, SessionGuestCreate, SessionResponse,
    SessionTimesUpdate, SessionUpdate, SlipResponse, StoreSettings, StoreSettingsUpdate,
    TableCreate, TableResponse, Token, TotalsResponse,
)
from slip import SlipReconciler

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

ROUNDING_METHODS = ("round", "ceil", "floor")


def backend_for(db: Session, user: CurrentUser) -> DatabaseBackend:
    return DatabaseBackend(db, user.store_id)


def slip_response(slip: SlipReconciler) -> SlipResponse:
    schedule = {
        order_id: {"start": start, "end": end}
        for order_id, (start, end) in slip.fee_schedule().items()
    }
    return SlipResponse(
        session=slip.session,
        totals=TotalsResponse(**slip.totals().to_dict()),
        fee_schedule=schedule,
    )


# ========================
# FastAPI アプリケーション
# ========================

app = FastAPI(title="Nightbase Slip API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
def handle_validation_error(request: Request, exc: ValidationError):
    logger.info("validation error: %s %s %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=400, content={"detail": exc.message, "info": exc.detail})


@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(PersistenceError)
def handle_persistence_error(request: Request, exc: PersistenceError):
    logger.error("persistence error: %s %s %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=500, content={"detail": exc.message})


@app.on_event("startup")
def startup_event():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_demo_store(db)
    finally:
        db.close()


def seed_demo_store(db: Session):
    """店舗が1件もなければデモ店舗を作成"""
    if db.query(Store).count() > 0:
        return

    store = Store(
        name="デモ店舗",
        username="demo",
        hashed_password=get_password_hash("nightbase2024"),
        manager_pin="1234",
        staff_pin="0000",
    )
    db.add(store)
    db.commit()
    db.refresh(store)
    logger.info("✅ デモ店舗作成: demo / 1234（スタッフ 0000）")

    db.add_all([
        Table(store_id=store.id, name="1"),
        Table(store_id=store.id, name="2"),
        Table(store_id=store.id, name="3", is_vip=True),
        Table(store_id=store.id, name="4"),
    ])
    db.add(PricingSystem(
        store_id=store.id,
        name="通常",
        set_fee=5000,
        set_duration_minutes=60,
        extension_fee=3000,
        extension_duration_minutes=30,
        nomination_fee=2000,
        nomination_set_duration_minutes=60,
        companion_fee=1000,
        companion_set_duration_minutes=30,
        douhan_fee=3000,
        is_default=True,
    ))
    db.add_all([
        Profile(store_id=store.id, display_name="あかり", role="cast"),
        Profile(store_id=store.id, display_name="ゆい", role="cast"),
        Profile(store_id=store.id, display_name="みく", role="cast", status="体入"),
        Profile(store_id=store.id, display_name="田中様", role="guest"),
        Profile(store_id=store.id, display_name="佐藤様", role="guest"),
    ])
    db.add_all([
        MenuItem(store_id=store.id, name="ビール", category="drink", price=1000),
        MenuItem(store_id=store.id, name="キャストドリンク", category="castdrink", price=1000),
        MenuItem(store_id=store.id, name="ドン ペリニヨン", category="champagne", price=45000,
                 stock_enabled=True, stock=3),
    ])
    db.commit()
    logger.info("✅ テーブル・料金システム・キャスト・メニュー作成完了")


# ========================
# APIエンドポイント
# ========================

# 認証
@app.post("/api/auth/login", response_model=Token)
def login(request: LoginRequest, db: Session = Depends(get_db)):
    store = db.query(Store).filter(Store.username == request.username).first()
    if not store:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="ユーザー名またはパスワードが正しくありません")
    if store.status == "suspended":
        raise HTTPException(status_code=403, detail="このアカウントは停止されています")

    role = resolve_role(store, request.password)
    if not role:
        logger.warning("login failed: username=%s", request.username)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="PINまたはパスワードが正しくありません")

    access_token = create_access_token(data={
        "sub": request.username,
        "store_id": store.id,
        "store_name": store.name,
        "role": role,
        "permissions": store.staff_permissions if role == "staff" else None,
    })
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "store_id": store.id,
        "store_name": store.name,
        "role": role,
    }


# テーブル
@app.get("/api/tables", response_model=List[TableResponse])
def get_tables(db: Session = Depends(get_db), user: CurrentUser = Depends(require_page("tables"))):
    return backend_for(db, user).get_tables()


@app.post("/api/tables", response_model=TableResponse)
def create_table(table: TableCreate, db: Session = Depends(get_db),
                 user: CurrentUser = Depends(require_page("tables", edit=True))):
    db_table = Table(store_id=user.store_id, **table.dict())
    db.add(db_table)
    db.commit()
    db.refresh(db_table)
    return db_table


# 料金システム
@app.get("/api/pricing-systems", response_model=List[PricingSystemResponse])
def get_pricing_systems(db: Session = Depends(get_db), user: CurrentUser = Depends(require_page("pricing"))):
    return backend_for(db, user).get_pricing_systems()


@app.post("/api/pricing-systems", response_model=PricingSystemResponse)
def create_pricing_system(pricing: PricingSystemCreate, db: Session = Depends(get_db),
                          user: CurrentUser = Depends(require_page("pricing", edit=True))):
    for field in ("set_duration_minutes", "extension_duration_minutes"):
        if getattr(pricing, field) <= 0:
            raise ValidationError("料金システムの設定が不正です", detail={"field": field})
    for field in ("nomination_set_duration_minutes", "companion_set_duration_minutes"):
        value = getattr(pricing, field)
        if value is not None and value <= 0:
            raise ValidationError("料金システムの設定が不正です", detail={"field": field})

    # デフォルトは店舗に1つ
    if pricing.is_default:
        db.query(PricingSystem).filter(PricingSystem.store_id == user.store_id).update({"is_default": False})
    db_pricing = PricingSystem(store_id=user.store_id, **pricing.dict())
    db.add(db_pricing)
    db.commit()
    db.refresh(db_pricing)
    return db_pricing


# キャスト・ゲスト
@app.get("/api/casts", response_model=List[ProfileResponse])
def get_casts(db: Session = Depends(get_db), user: CurrentUser = Depends(require_page("casts"))):
    return backend_for(db, user).get_casts()


@app.get("/api/guests", response_model=List[ProfileResponse])
def get_guests(db: Session = Depends(get_db), user: CurrentUser = Depends(require_page("guests"))):
    return backend_for(db, user).get_guests()


@app.post("/api/profiles", response_model=ProfileResponse)
def create_profile(profile: ProfileCreate, db: Session = Depends(get_db),
                   user: CurrentUser = Depends(require_page("casts", edit=True))):
    if profile.role not in ("cast", "guest"):
        raise ValidationError("role は cast か guest です", detail={"role": profile.role})
    db_profile = Profile(store_id=user.store_id, **profile.dict())
    db.add(db_profile)
    db.commit()
    db.refresh(db_profile)
    return db_profile


# メニュー
@app.get("/api/menu", response_model=List[MenuItemResponse])
def get_menu(db: Session = Depends(get_db), user: CurrentUser = Depends(require_page("menu"))):
    query = db.query(MenuItem)
    if user.store_id:
        query = query.filter(MenuItem.store_id == user.store_id)
    return query.all()


@app.post("/api/menu", response_model=MenuItemResponse)
def create_menu_item(item: MenuItemCreate, db: Session = Depends(get_db),
                     user: CurrentUser = Depends(require_page("menu", edit=True))):
    db_item = MenuItem(store_id=user.store_id, **item.dict())
    db.add(db_item)
    db.commit()
    db.refresh(db_item)
    return db_item


# 店舗設定
@app.get("/api/store/settings", response_model=StoreSettings)
def get_store_settings(db: Session = Depends(get_db), user: CurrentUser = Depends(require_page("slip"))):
    """伝票設定（丸め・サービス料・消費税）を取得"""
    return backend_for(db, user).get_store_settings()


@app.put("/api/store/settings", response_model=StoreSettings)
def update_store_settings(settings: StoreSettingsUpdate, db: Session = Depends(get_db),
                          user: CurrentUser = Depends(require_page("settings", edit=True))):
    """伝票設定を更新"""
    if not user.store_id:
        raise HTTPException(status_code=400, detail="Store ID required")
    if settings.slip_rounding_method is not None and settings.slip_rounding_method not in ROUNDING_METHODS:
        raise ValidationError("丸め方法が不正です", detail={"slip_rounding_method": settings.slip_rounding_method})
    if settings.slip_rounding_unit is not None and settings.slip_rounding_unit <= 0:
        raise ValidationError("丸め単位が不正です", detail={"slip_rounding_unit": settings.slip_rounding_unit})
    return backend_for(db, user).update_store_settings(settings.dict(exclude_unset=True))


# セッション
@app.post("/api/sessions", response_model=SessionResponse)
def create_session(session: SessionCreate, db: Session = Depends(get_db),
                   user: CurrentUser = Depends(require_page("slip", edit=True))):
    return backend_for(db, user).create_session(**session.dict())


@app.get("/api/sessions/active", response_model=List[SessionResponse])
def get_active_sessions(db: Session = Depends(get_db), user: CurrentUser = Depends(require_page("slip"))):
    return backend_for(db, user).list_sessions("active")


@app.get("/api/sessions/completed", response_model=List[SessionResponse])
def get_completed_sessions(db: Session = Depends(get_db), user: CurrentUser = Depends(require_page("slip"))):
    """会計済みセッション（新しい順）"""
    return backend_for(db, user).list_sessions("completed")


@app.get("/api/sessions/{session_id}", response_model=SessionResponse)
def get_session(session_id: int, db: Session = Depends(get_db), user: CurrentUser = Depends(require_page("slip"))):
    session = backend_for(db, user).get_session_by_id(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.put("/api/sessions/{session_id}", response_model=MessageResponse)
def update_session(session_id: int, session: SessionUpdate, db: Session = Depends(get_db),
                   user: CurrentUser = Depends(require_page("slip", edit=True))):
    backend_for(db, user).update_session(session_id, session.dict(exclude_unset=True))
    return {"message": "詳細を更新しました"}


@app.put("/api/sessions/{session_id}/times", response_model=MessageResponse)
def update_session_times(session_id: int, times: SessionTimesUpdate, db: Session = Depends(get_db),
                         user: CurrentUser = Depends(require_page("slip", edit=True))):
    backend_for(db, user).update_session_times(session_id, times.start_time, times.end_time)
    return {"message": "時間を更新しました"}


@app.put("/api/sessions/{session_id}/checkout", response_model=MessageResponse)
def checkout_session(session_id: int, db: Session = Depends(get_db),
                     user: CurrentUser = Depends(require_page("slip", edit=True))):
    backend_for(db, user).close_session(session_id)
    return {"message": "会計しました"}


@app.put("/api/sessions/{session_id}/reopen", response_model=MessageResponse)
def reopen_session(session_id: int, db: Session = Depends(get_db),
                   user: CurrentUser = Depends(require_page("slip", edit=True))):
    backend_for(db, user).reopen_session(session_id)
    return {"message": "伝票を再開しました"}


@app.delete("/api/sessions/{session_id}", response_model=MessageResponse)
def delete_session(session_id: int, db: Session = Depends(get_db),
                   user: CurrentUser = Depends(require_page("slip", edit=True))):
    backend_for(db, user).delete_session(session_id)
    return {"message": "伝票とセッションを削除しました"}


# 注文
@app.post("/api/sessions/{session_id}/orders", response_model=List[OrderResponse])
def create_orders(session_id: int, order: OrderCreate, db: Session = Depends(get_db),
                  user: CurrentUser = Depends(require_page("slip", edit=True))):
    return backend_for(db, user).create_order(session_id, order.items, order.guest_id, order.cast_id)


@app.delete("/api/sessions/{session_id}/orders", response_model=MessageResponse)
def delete_orders_by_name(session_id: int, name: str, db: Session = Depends(get_db),
                          user: CurrentUser = Depends(require_page("slip", edit=True))):
    backend_for(db, user).delete_orders_by_name(session_id, name)
    return {"message": f"{name}を削除しました"}


@app.put("/api/orders/{order_id}", response_model=MessageResponse)
def update_order(order_id: int, order: OrderUpdate, db: Session = Depends(get_db),
                 user: CurrentUser = Depends(require_page("slip", edit=True))):
    backend_for(db, user).update_order(order_id, order.dict(exclude_unset=True))
    return {"message": "更新しました"}


@app.delete("/api/orders/{order_id}", response_model=MessageResponse)
def delete_order(order_id: int, db: Session = Depends(get_db),
                 user: CurrentUser = Depends(require_page("slip", edit=True))):
    backend_for(db, user).delete_order(order_id)
    return {"message": "削除しました"}


@app.post("/api/sessions/{session_id}/charges", response_model=List[OrderResponse])
def apply_charges(session_id: int, plan: ChargePlan, db: Session = Depends(get_db),
                  user: CurrentUser = Depends(require_page("slip", edit=True))):
    """再計算結果をまとめて反映（1トランザクション）"""
    return backend_for(db, user).apply_charge_plan(session_id, plan)


# セッションのゲスト
@app.post("/api/sessions/{session_id}/guests", response_model=MessageResponse)
def add_session_guest(session_id: int, guest: SessionGuestCreate, db: Session = Depends(get_db),
                      user: CurrentUser = Depends(require_page("slip", edit=True))):
    backend_for(db, user).add_guest_to_session(session_id, guest.guest_id)
    return {"message": "ゲストを追加しました"}


@app.delete("/api/sessions/{session_id}/guests/{guest_id}", response_model=MessageResponse)
def remove_session_guest(session_id: int, guest_id: int, db: Session = Depends(get_db),
                         user: CurrentUser = Depends(require_page("slip", edit=True))):
    backend_for(db, user).remove_guest_from_session(session_id, guest_id)
    return {"message": "ゲストを削除しました"}


# 伝票
@app.get("/api/sessions/{session_id}/slip", response_model=SlipResponse)
def get_slip(session_id: int, db: Session = Depends(get_db), user: CurrentUser = Depends(require_page("slip"))):
    """セッション・注文・合計・セット/延長の時間帯"""
    slip = SlipReconciler(backend_for(db, user))
    if not slip.load_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return slip_response(slip)


@app.post("/api/sessions/{session_id}/recalculate", response_model=SlipResponse)
def recalculate_session(session_id: int, request: RecalculateRequest, db: Session = Depends(get_db),
                        user: CurrentUser = Depends(require_page("slip", edit=True))):
    """ヘッダーを保存してから料金を再計算"""
    slip = SlipReconciler(backend_for(db, user))
    if not slip.load_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")

    changes = request.dict(exclude_unset=True, exclude_none=True)
    if "date" in changes:
        try:
            changes["business_date"] = date.fromisoformat(changes.pop("date"))
        except ValueError:
            raise ValidationError("日付は YYYY-MM-DD で入力してください", detail={"date": request.date})

    if not slip.recalculate_all(**changes):
        message = slip.notifications[-1].message if slip.notifications else "再計算に失敗しました"
        raise PersistenceError(message)
    return slip_response(slip)


@app.get("/health")
def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
