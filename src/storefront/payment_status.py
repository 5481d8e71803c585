"""Pull-based payment status lookup for client polling."""

import logging

from .errors import ValidationError
from .mercadopago import MercadoPagoClient
from .models import PaymentStatus

logger = logging.getLogger(__name__)


class PaymentStatusProber:
    """Reads a payment's current state from the provider. Never touches orders."""

    def __init__(self, client: MercadoPagoClient):
        self.client = client

    def probe(self, payment_id: str) -> PaymentStatus:
        """
        Query the provider and return a normalized projection.

        Raises:
            ValidationError: If payment_id is blank.
            PaymentNotFoundError: If the provider has no such payment.
            UpstreamError: On provider faults.
        """
        if not payment_id or not payment_id.strip():
            raise ValidationError("Payment ID is required", field="payment_id")
        data = self.client.get_payment(payment_id.strip())
        status = PaymentStatus.from_provider(data)
        logger.debug("Payment %s status=%s", status.id, status.status)
        return status
