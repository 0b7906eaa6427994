class InvalidWebhook(Exception):
    """Payload cannot be processed at all (e.g. no paymentID)."""
