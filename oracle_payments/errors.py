"""Payment error taxonomy shared by the gateways, the API and the dialog."""

from typing import Optional


class PaymentError(Exception):
    retryable = False


class ProcessorUnavailable(PaymentError):
    """Network failure, 5xx or an unreadable response from a processor."""

    retryable = True

    def __init__(self, message: str, processor: Optional[str] = None):
        super().__init__(message)
        self.processor = processor


class ProcessorTimeout(ProcessorUnavailable):
    pass


class ProcessorRejected(PaymentError):
    """The processor refused the request (4xx). Shown to the user as-is."""

    def __init__(self, message: str, processor: Optional[str] = None, status_code: int = 400):
        super().__init__(message)
        self.processor = processor
        self.status_code = status_code


class PollingTimeout(PaymentError):
    """The client stopped polling. The payment may still settle later."""

    def __init__(self, payment_id: str, attempts: int):
        super().__init__(
            f"Payment {payment_id} is still pending after {attempts} checks. "
            "You will receive an email and your dashboard will update once it is confirmed."
        )
        self.payment_id = payment_id
        self.attempts = attempts


class ReconciliationConflict(PaymentError):
    """A terminal outcome arrived for an invoice already settled by another payment."""

    def __init__(self, invoice_id: str, current_status: str, current_payment_id: Optional[str]):
        super().__init__(
            f"Invoice {invoice_id} is already {current_status} (payment {current_payment_id})"
        )
        self.invoice_id = invoice_id
        self.current_status = current_status
        self.current_payment_id = current_payment_id


class VerificationFailed(PaymentError):
    """The processor reports that the payment did not succeed."""

    def __init__(self, reference: str, status: str):
        super().__init__(f"Payment {reference} was not successful ({status})")
        self.reference = reference
        self.status = status


class NoPaymentRequired(PaymentError):
    pass


class CustomPricingRequired(PaymentError):
    pass


class InvalidTransition(PaymentError):
    def __init__(self, invoice_id: str, current: str, requested: str):
        super().__init__(f"Invoice {invoice_id} cannot move from {current} to {requested}")
        self.invoice_id = invoice_id
        self.current = current
        self.requested = requested


class InvoiceNotFound(PaymentError):
    def __init__(self, invoice_id: str):
        super().__init__(f"Invoice {invoice_id} not found")
        self.invoice_id = invoice_id


class IntentAlreadyUsed(PaymentError):
    def __init__(self, order_id: str, state: str):
        super().__init__(f"Payment intent {order_id} is already {state}; create a new one")
        self.order_id = order_id
        self.state = state
