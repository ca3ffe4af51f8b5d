import math
from typing import Dict

DEFAULT_TSHIRT_PRICE = 28.0
DEFAULT_PRINT_PRICE = 10.10
DEFAULT_GST_RATE = 0.05


def calculate_pricing(
    quantity: int,
    tshirt_price: float = DEFAULT_TSHIRT_PRICE,
    print_price: float = DEFAULT_PRINT_PRICE,
    gst_rate: float = DEFAULT_GST_RATE,
) -> Dict[str, float]:
    """Per-item and order totals; GST per item is floored to the paisa."""
    quantity = max(int(quantity or 0), 0)
    per_item_subtotal = round(tshirt_price + print_price, 2)
    per_item_gst = math.floor(per_item_subtotal * gst_rate * 100) / 100
    per_item_total = round(per_item_subtotal + per_item_gst, 2)

    subtotal = round(per_item_subtotal * quantity, 2)
    gst = round(per_item_gst * quantity, 2)
    return {
        "quantity": quantity,
        "per_item_subtotal": per_item_subtotal,
        "per_item_gst": per_item_gst,
        "per_item_total": per_item_total,
        "subtotal": subtotal,
        "gst": gst,
        "total": round(subtotal + gst, 2),
    }


def calculate_reward(member_count: int, fee: float = 200, share: float = 0.10) -> int:
    if not member_count or member_count <= 0:
        return 0
    return int(math.floor(member_count * fee * share + 0.5))
