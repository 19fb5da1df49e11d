# payments/gateways/__init__.py

from django.conf import settings

from payments.gateways.base import PaymentGateway, GatewayOrder
from payments.gateways.razorpay import RazorpayGateway
from payments.gateways.easebuzz import EasebuzzGateway
from utils.exceptions import ValidationError

GATEWAYS = {
    RazorpayGateway.name: RazorpayGateway,
    EasebuzzGateway.name: EasebuzzGateway,
}


def get_gateway(name=None, **kwargs):
    """Instantiate the named gateway, or the one selected in settings."""
    name = (name or settings.PAYMENT_GATEWAY or '').lower()
    try:
        gateway_class = GATEWAYS[name]
    except KeyError:
        raise ValidationError(f"Unknown payment gateway: {name or 'none configured'}")
    return gateway_class(**kwargs)


__all__ = ['PaymentGateway', 'GatewayOrder', 'RazorpayGateway', 'EasebuzzGateway', 'GATEWAYS', 'get_gateway']
