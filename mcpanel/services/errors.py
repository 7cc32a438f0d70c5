class ServiceError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class NotFound(ServiceError):
    """No managed container (or the handle went stale)."""

    def __init__(self, message: str = "Minecraft container not found") -> None:
        super().__init__(404, message)


class Conflict(ServiceError):
    """The runtime reports the requested transition is a no-op."""

    def __init__(self, message: str) -> None:
        super().__init__(409, message)


class Busy(ServiceError):
    def __init__(self, action: str) -> None:
        super().__init__(409, f"Another operation is in progress ({action})")
        self.action = action


class GatewayUnavailable(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(503, message)


class RuntimeFailure(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(500, message)
