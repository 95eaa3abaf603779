"""Error taxonomy for the alert engine"""


class AlertError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(AlertError):
    """Unknown owner, device or emergency event."""
    status_code = 404


class InvalidInput(AlertError):
    """Malformed reading, location, query or settings."""
    status_code = 422


class Unauthorized(AlertError):
    """Actor is not allowed to act on this event."""
    status_code = 403


class DeliveryFailure(AlertError):
    """One recipient could not be notified. Never surfaces past the fan-out."""
    status_code = 502

    def __init__(self, message: str, caregiver_id: str = None, method: str = None):
        super().__init__(message)
        self.caregiver_id = caregiver_id
        self.method = method
