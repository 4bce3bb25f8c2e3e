import random
import re
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from checkout_recovery.errors import DuplicateDiscountCodeError
from checkout_recovery.services.offer_record import OFFER_DISCOUNT, OFFER_FREE_SHIPPING
from checkout_recovery.services.retry import retry_bounded
from checkout_recovery.services.shopify import ShopifyAdminClient

MAX_CODE_ATTEMPTS = 8


def code_prefix(raw: Optional[str]) -> str:
    cleaned = re.sub(r"[^A-Z0-9]", "", (raw or "").upper())[:6]
    return cleaned or "C"


def make_code(prefix: Optional[str], rng: Callable[[int, int], int] = random.randint) -> str:
    return f"{code_prefix(prefix)}{rng(1000, 9999)}"


def _iso(ts: datetime) -> str:
    return ts.replace(microsecond=0).isoformat() + "Z"


def create_offer_code(client: ShopifyAdminClient, offer_type: str, *, prefix: Optional[str],
                      percent: Optional[int], validity_hours: int, now: datetime,
                      customer_gid: Optional[str] = None, min_subtotal=None,
                      make: Callable[[Optional[str]], str] = make_code) -> Tuple[str, str]:
    """
    Create a discount or free-shipping code, drawing a fresh candidate after
    each duplicate-code rejection. Returns (code, discount node id).
    """
    starts_at = _iso(now)
    ends_at = _iso(now + timedelta(hours=validity_hours))

    def attempt(_n: int) -> Tuple[str, str]:
        code = make(prefix)
        if offer_type == OFFER_DISCOUNT:
            node_id = client.create_discount_code(code, int(percent or 0), starts_at, ends_at,
                                                  customer_gid=customer_gid, min_subtotal=min_subtotal)
        elif offer_type == OFFER_FREE_SHIPPING:
            node_id = client.create_free_shipping_code(code, starts_at, ends_at,
                                                       customer_gid=customer_gid, min_subtotal=min_subtotal)
        else:
            raise ValueError(f"offer type {offer_type!r} carries no code")
        return code, node_id

    return retry_bounded(attempt, MAX_CODE_ATTEMPTS, lambda e: isinstance(e, DuplicateDiscountCodeError))
