"""Gateway adapter lookup by name"""

import logging
from typing import Dict, Optional

from gateway.base import GatewayAdapter
from gateway.mercadopago_adapter import MercadoPagoAdapter
from gateway.paypal_adapter import PayPalAdapter
from gateway.paystack_adapter import PaystackAdapter
from gateway.razorpay_adapter import RazorpayAdapter
from gateway.stripe_adapter import StripeAdapter

logger = logging.getLogger(__name__)

ADAPTERS: Dict[str, GatewayAdapter] = {}


def _build_default_adapters() -> Dict[str, GatewayAdapter]:
    adapters = [StripeAdapter(), PayPalAdapter(), RazorpayAdapter(), PaystackAdapter(), MercadoPagoAdapter()]
    return {adapter.name: adapter for adapter in adapters}


def get_adapter(gateway: str) -> Optional[GatewayAdapter]:
    """Return the adapter registered for a gateway name, or None when unknown"""
    if not ADAPTERS:
        ADAPTERS.update(_build_default_adapters())
    return ADAPTERS.get((gateway or "").lower())


def register_adapter(adapter: GatewayAdapter) -> None:
    """Replace the adapter for adapter.name (tests swap in fakes this way)"""
    if not ADAPTERS:
        ADAPTERS.update(_build_default_adapters())
    ADAPTERS[adapter.name] = adapter
    logger.debug(f"🔌 GATEWAY_REGISTRY: Registered adapter for {adapter.name}")


def reset_adapters() -> None:
    ADAPTERS.clear()
