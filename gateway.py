"""
Payment provider boundary.

Thin wrapper around Stripe that returns plain dicts and translates provider
failures into service errors. Nothing in here touches the database.
"""

import logging
import os
from typing import Optional

import stripe
from dotenv import load_dotenv

from errors import InternalError, NotFoundError, RetryableError, ValidationError

load_dotenv()

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))


def _plain(obj) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    return obj.to_dict()


def _object_id(value) -> Optional[str]:
    # expandable fields come back either as an id or as the expanded object
    if value is None or isinstance(value, str):
        return value
    return value.id


class StripeGateway:
    def __init__(self, api_key: Optional[str] = None, timeout: float = PAYMENT_TIMEOUT_SECONDS):
        self.api_key = api_key or STRIPE_SECRET_KEY
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def _call(self, action: str, fn, *args, **kwargs):
        if not self.api_key:
            raise InternalError("Payment provider is not configured. Set STRIPE_SECRET_KEY.")
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error("Payment provider unavailable during %s: %s", action, e)
            raise RetryableError("Payment provider unavailable, try again")
        except stripe.InvalidRequestError as e:
            if e.http_status == 404:
                raise NotFoundError(f"Payment provider has no such object ({action})")
            logger.warning("Payment provider rejected %s: %s", action, e.user_message or e)
            raise ValidationError(e.user_message or str(e))
        except stripe.StripeError as e:
            logger.error("Payment provider error during %s: %s", action, e)
            raise InternalError("Payment provider error")

    def create_intent(self, amount: int, currency: str, metadata: dict) -> dict:
        intent = self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )
        return {"client_secret": intent.client_secret, "intent_id": intent.id}

    def retrieve_intent(self, intent_id: str) -> dict:
        intent = self._call("retrieve_intent", stripe.PaymentIntent.retrieve, intent_id)
        return {
            "intent_id": intent.id,
            "status": intent.status,
            "amount": intent.amount_received or intent.amount,
            "currency": intent.currency,
            "metadata": _plain(intent.metadata),
        }

    def create_checkout_session(self, line_items: list, success_url: str, cancel_url: str, metadata: dict) -> dict:
        session = self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            mode="payment",
            line_items=line_items,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
        )
        return {"url": session.url, "session_id": session.id}

    def retrieve_session(self, session_id: str) -> dict:
        session = self._call("retrieve_session", stripe.checkout.Session.retrieve, session_id)
        return {
            "session_id": session.id,
            "payment_intent_id": _object_id(session.payment_intent),
            "payment_status": session.payment_status,
            "amount_total": session.amount_total,
            "currency": session.currency,
            "metadata": _plain(session.metadata),
        }
