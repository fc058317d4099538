from __future__ import annotations


class TurnflowError(RuntimeError):
    pass


class ConfigError(TurnflowError):
    pass


class ArgumentValidationError(TurnflowError):
    pass


class PermissionDeniedError(TurnflowError):
    pass


class TransientCapabilityError(TurnflowError):
    """Raised by a capability when the failure is infrastructure noise worth retrying."""


class ProviderError(TurnflowError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryableProviderError(ProviderError):
    pass


class FatalProviderError(ProviderError):
    pass


class InvalidTransitionError(TurnflowError):
    pass


class StaleTurnError(TurnflowError):
    pass


class ChainDepthExceededError(TurnflowError):
    def __init__(self, depth: int, max_depth: int) -> None:
        super().__init__(f"Hand-off chain depth {depth} exceeds maximum {max_depth}")
        self.depth = depth
        self.max_depth = max_depth


class NotFoundError(TurnflowError):
    pass


class CycleLimitExceededError(TurnflowError):
    def __init__(self, cycle: int, max_cycles: int) -> None:
        super().__init__(f"Turn reached cycle {cycle}, above the limit of {max_cycles}")
        self.cycle = cycle
        self.max_cycles = max_cycles
