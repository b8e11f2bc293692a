from __future__ import annotations


class AllocationError(ValueError):
    pass


class UnknownSize(AllocationError):
    def __init__(self, size_name: str):
        super().__init__(f'Unknown size: {size_name}')
        self.size_name = size_name


class InvalidQuantity(AllocationError):
    def __init__(self, quantity: object):
        super().__init__(f'Quantity must be a positive whole number, got {quantity!r}')
        self.quantity = quantity


class InvalidOverride(AllocationError):
    pass


class IdempotencySignal(Exception):
    """A keyed record already exists; callers recover by using ``existing``."""

    def __init__(self, message: str, existing: object):
        super().__init__(message)
        self.existing = existing


class AlreadyInvoiced(IdempotencySignal):
    pass


class DuplicatePO(IdempotencySignal):
    pass


class WebhookRejected(Exception):
    reason = 'rejected'


class InvalidSender(WebhookRejected):
    reason = 'invalid_sender'


class NoCustomerCode(WebhookRejected):
    reason = 'no_customer_code'


class MissingAttachment(WebhookRejected):
    reason = 'no_pdf'


class ParseValidationFailed(ValueError):
    pass


class RetryableError(Exception):
    pass


class PersistenceFailure(RetryableError):
    pass


class ExtractionTimeout(RetryableError):
    pass
