from studio.billing.routes import billing_bp
from studio.billing.webhooks import webhooks_bp, stripe_webhook

__all__ = ["billing_bp", "webhooks_bp", "stripe_webhook"]
