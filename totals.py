"""
伝票の合計計算
小計 → サービス料 → 消費税 → 合計 → 丸め（店舗設定）
"""

from dataclasses import asdict, dataclass

from config import DEFAULT_ROUNDING_UNIT, DEFAULT_SERVICE_CHARGE_RATE, DEFAULT_TAX_RATE


@dataclass
class SlipTotals:
    subtotal: int
    service_charge: int
    tax: int
    total: int
    rounded_total: int
    difference: int

    def to_dict(self):
        return asdict(self)


def _setting(settings, name, default):
    if settings is None:
        return default
    if isinstance(settings, dict):
        value = settings.get(name)
    else:
        value = getattr(settings, name, None)
    return default if value is None else value


def round_amount(amount: int, settings=None) -> int:
    """店舗設定に従って金額を丸める（設定なし・無効ならそのまま）"""
    if not _setting(settings, "slip_rounding_enabled", False):
        return amount

    method = _setting(settings, "slip_rounding_method", "round") or "round"
    unit = _setting(settings, "slip_rounding_unit", DEFAULT_ROUNDING_UNIT) or DEFAULT_ROUNDING_UNIT

    if method == "round":
        # 0.5 は切り上げ（負数は0側へ）
        return (2 * amount + unit) // (2 * unit) * unit
    if method == "ceil":
        return -(-amount // unit) * unit
    if method == "floor":
        return amount // unit * unit
    return amount


def calculate_subtotal(orders) -> int:
    return sum(order.unit_price * order.quantity for order in orders)


def calculate_totals(orders, settings=None) -> SlipTotals:
    """
    注文一覧から合計を計算する。キャッシュせず毎回計算すること。

    サービス料・消費税はそれぞれ切り捨て。税はサービス料込みの金額にかかる。
    """
    service_rate = _setting(settings, "service_charge_rate", DEFAULT_SERVICE_CHARGE_RATE)
    tax_rate = _setting(settings, "tax_rate", DEFAULT_TAX_RATE)

    subtotal = calculate_subtotal(orders)
    service_charge = subtotal * service_rate // 100
    tax = (subtotal + service_charge) * tax_rate // 100
    total = subtotal + service_charge + tax
    rounded_total = round_amount(total, settings)

    return SlipTotals(
        subtotal=subtotal,
        service_charge=service_charge,
        tax=tax,
        total=total,
        rounded_total=rounded_total,
        difference=rounded_total - total,
    )
