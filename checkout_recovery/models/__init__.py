from .call_job import CallJob
from .checkout import Checkout
from .shop_settings import ShopSettings
from .shop_session import ShopSession
from .shop_billing import ShopBilling
from .call_charge import CallCharge
from .billing_coupon import BillingCoupon, BillingCouponRedemption
from .tool_call_log import ToolCallLog

__all__ = [
    "CallJob",
    "Checkout",
    "ShopSettings",
    "ShopSession",
    "ShopBilling",
    "CallCharge",
    "BillingCoupon",
    "BillingCouponRedemption",
    "ToolCallLog",
]
