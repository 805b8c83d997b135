"""
料金計算（セット・延長・指名・同伴・場内）

セッションの入店/退店時間・ゲスト・料金システムから、システムが管理する
料金明細を毎回同じ結果になるよう作り直す。DBには触れない純粋な計算のみ。

- セット料金: ゲストごとに1件（数量1）
- 延長料金: セット時間超過分を延長単位で切り上げた回数分（数量=人数）
- 指名料・同伴料・場内料金: キャストごとの接客時間をブロック単位で切り上げ
"""

import logging
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple

from config import DEFAULT_COMPANION_DURATION_MINUTES, DEFAULT_NOMINATION_DURATION_MINUTES
from errors import ValidationError
from schemas import ChargePlan, PlannedCharge

logger = logging.getLogger(__name__)


class ChargeCategory(str, Enum):
    SET_FEE = "set_fee"
    EXTENSION_FEE = "extension_fee"
    NOMINATION_FEE = "nomination_fee"
    DOUHAN_FEE = "douhan_fee"
    COMPANION_FEE = "companion_fee"
    MENU_ITEM = "menu_item"
    ADJUSTMENT = "adjustment"  # 割引・サービス料などの自由入力

    @property
    def label(self) -> str:
        return CATEGORY_LABELS.get(self, "")


CATEGORY_LABELS = {
    ChargeCategory.SET_FEE: "セット料金",
    ChargeCategory.EXTENSION_FEE: "延長料金",
    ChargeCategory.NOMINATION_FEE: "指名料",
    ChargeCategory.DOUHAN_FEE: "同伴料",
    ChargeCategory.COMPANION_FEE: "場内料金",
}

# 再計算で削除・再作成するカテゴリ
DERIVED_CATEGORIES = (
    ChargeCategory.SET_FEE,
    ChargeCategory.EXTENSION_FEE,
    ChargeCategory.NOMINATION_FEE,
    ChargeCategory.DOUHAN_FEE,
    ChargeCategory.COMPANION_FEE,
)

# キャストに紐づく時間制料金
CAST_FEE_CATEGORIES = (
    ChargeCategory.NOMINATION_FEE,
    ChargeCategory.DOUHAN_FEE,
    ChargeCategory.COMPANION_FEE,
)


def category_for_name(name: Optional[str]) -> Optional[ChargeCategory]:
    """表示名から料金カテゴリを引く（該当なしは None）"""
    for category, label in CATEGORY_LABELS.items():
        if label == name:
            return category
    return None


def category_of(order) -> ChargeCategory:
    """注文のカテゴリ。タグがない旧データは表示名とメニュー参照で判定する"""
    tag = getattr(order, "category", None)
    if tag:
        try:
            return ChargeCategory(tag)
        except ValueError:
            logger.warning("unknown category tag: order=%s tag=%s", getattr(order, "id", None), tag)
    if getattr(order, "menu_item_id", None):
        return ChargeCategory.MENU_ITEM
    return category_for_name(getattr(order, "item_name", None)) or ChargeCategory.ADJUSTMENT


def minutes_between(start: datetime, end: datetime) -> int:
    return math.floor((end - start).total_seconds() / 60)


def _positive_duration(value, default, field):
    if value is None:
        return default
    if value <= 0:
        raise ValidationError("料金システムの設定が不正です", detail={"field": field})
    return value


def block_duration(category: ChargeCategory, pricing_system) -> int:
    """キャスト料金の1ブロックの分数（同伴料は指名と同じ単位）"""
    if category == ChargeCategory.COMPANION_FEE:
        return _positive_duration(
            pricing_system.companion_set_duration_minutes,
            DEFAULT_COMPANION_DURATION_MINUTES,
            "companion_set_duration_minutes",
        )
    return _positive_duration(
        pricing_system.nomination_set_duration_minutes,
        DEFAULT_NOMINATION_DURATION_MINUTES,
        "nomination_set_duration_minutes",
    )


def fee_for(category: ChargeCategory, pricing_system) -> int:
    fees = {
        ChargeCategory.SET_FEE: pricing_system.set_fee,
        ChargeCategory.EXTENSION_FEE: pricing_system.extension_fee,
        ChargeCategory.NOMINATION_FEE: pricing_system.nomination_fee,
        ChargeCategory.DOUHAN_FEE: pricing_system.douhan_fee,
        ChargeCategory.COMPANION_FEE: pricing_system.companion_fee,
    }
    return fees.get(category) or 0


def cast_fee_blocks(category: ChargeCategory, pricing_system, start: datetime, end: datetime) -> int:
    """
    接客時間のブロック数。端数は1ブロックとして請求する（最低1）。
    接客時間が0分以下なら 0 を返す。
    """
    minutes = minutes_between(start, end)
    if minutes <= 0:
        return 0
    return max(1, math.ceil(minutes / block_duration(category, pricing_system)))


def initial_cast_fee_quantity(category: ChargeCategory, pricing_system, start, end) -> int:
    """キャスト料金追加時の仮の回数（指名・同伴のみ。最低回数は再計算時に適用）"""
    if category == ChargeCategory.COMPANION_FEE or not start or not end:
        return 0
    minutes = minutes_between(start, end)
    if minutes <= 0:
        return 0
    return minutes // block_duration(category, pricing_system)


def validate_recalculation(session, pricing_system):
    if pricing_system is None:
        raise ValidationError("料金システムが設定されていません")
    if not pricing_system.set_duration_minutes or pricing_system.set_duration_minutes <= 0:
        raise ValidationError("料金システムの設定が不正です", detail={"field": "set_duration_minutes"})
    if not pricing_system.extension_duration_minutes or pricing_system.extension_duration_minutes <= 0:
        raise ValidationError("料金システムの設定が不正です", detail={"field": "extension_duration_minutes"})
    if session.start_time is None or session.end_time is None:
        raise ValidationError("入店時間と退店時間を設定してください")
    if session.end_time <= session.start_time:
        raise ValidationError("退店時間は入店時間より後にしてください")


def set_fee_overrides(orders, default_fee: int) -> Dict[int, int]:
    """
    ゲストごとに手動で変更されたセット料金（再計算で引き継ぐ）。
    default_fee と同額の明細は自動作成分とみなし、引き継がない。
    """
    overrides = {}
    for order in orders:
        if category_of(order) != ChargeCategory.SET_FEE or order.guest_id is None:
            continue
        if order.unit_price != default_fee:
            overrides.setdefault(order.guest_id, order.unit_price)
    return overrides


def derive_charges(session, pricing_system, existing_orders, previous_set_fee: Optional[int] = None) -> ChargePlan:
    """
    再計算：システム管理の料金明細を丸ごと作り直す内容を返す。

    Args:
        session: start_time / end_time / guest_count / guests を持つセッション
        pricing_system: 料金システム
        existing_orders: 削除前の注文（ゲスト別セット料金・キャスト料金の引き継ぎ元）
        previous_set_fee: 変更前の料金システムのセット料金（省略時は pricing_system のもの）

    Returns:
        ChargePlan（削除カテゴリと作成する明細。作成順は表示順）
    """
    validate_recalculation(session, pricing_system)
    existing_orders = list(existing_orders)

    duration_minutes = minutes_between(session.start_time, session.end_time)
    guests = list(session.guests or [])
    charges: List[PlannedCharge] = []

    # 1. セット料金（ゲストごと）
    if previous_set_fee is None:
        previous_set_fee = pricing_system.set_fee
    overrides = set_fee_overrides(existing_orders, previous_set_fee)
    set_label = ChargeCategory.SET_FEE.label
    for guest in guests:
        charges.append(PlannedCharge(
            category=ChargeCategory.SET_FEE.value,
            name=set_label,
            quantity=1,
            amount=overrides.get(guest.guest_id, pricing_system.set_fee),
            guest_id=guest.guest_id,
        ))
    if not guests and session.guest_count:
        charges.append(PlannedCharge(
            category=ChargeCategory.SET_FEE.value,
            name=set_label,
            quantity=session.guest_count,
            amount=pricing_system.set_fee,
        ))

    # 2. 延長料金
    extension_count = 0
    if duration_minutes > pricing_system.set_duration_minutes:
        excess_minutes = duration_minutes - pricing_system.set_duration_minutes
        extension_count = math.ceil(excess_minutes / pricing_system.extension_duration_minutes)
        people = len(guests) or session.guest_count or 1
        for _ in range(extension_count):
            charges.append(PlannedCharge(
                category=ChargeCategory.EXTENSION_FEE.value,
                name=ChargeCategory.EXTENSION_FEE.label,
                quantity=people,
                amount=pricing_system.extension_fee,
            ))

    # 3. 指名料・同伴料・場内料金（既存のキャスト明細の時間帯から作り直す）
    for order in existing_orders:
        category = category_of(order)
        if category not in CAST_FEE_CATEGORIES or order.cast_id is None:
            continue
        window_start = order.start_time or session.start_time
        window_end = min(order.end_time or session.end_time, session.end_time)
        count = cast_fee_blocks(category, pricing_system, window_start, window_end)
        if count == 0:
            logger.info("skip cast fee: order=%s cast=%s (0分)", order.id, order.cast_id)
            continue
        charges.append(PlannedCharge(
            category=category.value,
            name=category.label,
            quantity=count,
            amount=fee_for(category, pricing_system),
            guest_id=order.guest_id,
            cast_id=order.cast_id,
            start_time=window_start,
            end_time=window_end,
        ))

    return ChargePlan(
        categories=[c.value for c in DERIVED_CATEGORIES],
        charges=charges,
        duration_minutes=duration_minutes,
        extension_count=extension_count,
    )


def fee_schedule(session, pricing_system, orders) -> Dict[str, Tuple[datetime, datetime]]:
    """セット料金・延長料金の各明細が対象とする時間帯（表示用）"""
    if session is None or session.start_time is None or pricing_system is None:
        return {}

    schedule = {}
    set_end = session.start_time + timedelta(minutes=pricing_system.set_duration_minutes or 0)
    for order in orders:
        if category_of(order) == ChargeCategory.SET_FEE:
            schedule[str(order.id)] = (session.start_time, set_end)

    extensions = [o for o in orders if category_of(o) == ChargeCategory.EXTENSION_FEE]
    extensions.sort(key=lambda o: o.created_at or datetime.min)
    block = timedelta(minutes=pricing_system.extension_duration_minutes or 0)
    current = set_end
    for order in extensions:
        schedule[str(order.id)] = (current, current + block)
        current = current + block
    return schedule
