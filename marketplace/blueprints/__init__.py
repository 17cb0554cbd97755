from .entitlements import entitlements_bp
from .payments import payments_bp

__all__ = ['entitlements_bp', 'payments_bp']
