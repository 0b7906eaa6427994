class OrderError(Exception):
    pass


class NotFoundError(OrderError):
    """No order matches the given order id or gateway paymentID."""


class PaymentNotAllowed(OrderError):
    """A transition precondition does not hold; nothing was changed."""


class AmountValidationError(OrderError):
    def __init__(self, paid, expected):
        self.paid = paid
        self.expected = expected
        super().__init__(f"Amount mismatch: paid {paid}, expected {expected}")
