"""Error taxonomy shared by the entitlement service and the HTTP handlers."""


class EntitlementError(Exception):
    code = 'internal_error'
    http_status = 500
    public_message = 'Something went wrong. Please try again.'

    def __init__(self, message='', details=None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = dict(details or {})

    def to_payload(self):
        return {'error': self.message, 'code': self.code, 'details': self.details}


class Unauthenticated(EntitlementError):
    code = 'unauthenticated'
    http_status = 401
    public_message = 'Please sign in to continue'


class NotFound(EntitlementError):
    code = 'not_found'
    http_status = 404
    public_message = 'Not found'


class PaymentNotConfirmed(EntitlementError):
    code = 'payment_not_confirmed'
    http_status = 400
    public_message = 'Payment has not been confirmed yet.'


class Forbidden(EntitlementError):
    code = 'forbidden'
    http_status = 403
    public_message = 'Access denied'

    def to_payload(self):
        # Never leak why access was refused.
        return {'error': self.public_message, 'code': self.code, 'details': {}}


class MetadataMismatch(EntitlementError):
    code = 'metadata_mismatch'
    http_status = 409
    public_message = 'Payment does not match the requested bundle.'


class UpstreamUnavailable(EntitlementError):
    code = 'upstream_unavailable'
    http_status = 500
    public_message = 'A payment or storage service is temporarily unavailable. Please retry.'

    def __init__(self, message='', details=None):
        details = dict(details or {})
        details.setdefault('retryable', True)
        super().__init__(message, details)


class Conflict(EntitlementError):
    """A conditional write lost a race. Recovered inside the service."""

    code = 'conflict'
    http_status = 409
    public_message = 'Concurrent update detected.'
