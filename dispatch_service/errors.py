class DispatchError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidRequest(DispatchError):
    status_code = 400


class Forbidden(DispatchError):
    status_code = 403


class NotFound(DispatchError):
    status_code = 404


class NoProviderAvailable(DispatchError):
    status_code = 404

    def __init__(self, message: str = "No available providers found nearby"):
        super().__init__(message)


class ProviderLocked(DispatchError):
    status_code = 409

    def __init__(self, provider_id: str | None = None, message: str | None = None):
        super().__init__(message or "Provider is currently locked by another booking")
        self.provider_id = provider_id


class InvalidTransition(DispatchError):
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"Invalid status transition from {current} to {requested}")
        self.current = current
        self.requested = requested
