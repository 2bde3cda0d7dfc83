from __future__ import annotations


class ServiceError(Exception):
    def __init__(self, http_status: int, code: str, message: str):
        super().__init__(message)
        self.http_status = http_status
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class InvalidConfig(ServiceError):
    def __init__(self, message: str = "The terraform configuration is empty or malformed"):
        super().__init__(http_status=400, code="INVALID_CONFIG", message=message)


class MissingConfig(ServiceError):
    def __init__(self, message: str = "No terraform configuration was provided"):
        super().__init__(http_status=400, code="MISSING_CONFIG", message=message)


class NotFound(ServiceError):
    def __init__(self, message: str = "Cluster not found"):
        super().__init__(http_status=404, code="CLUSTER_NOT_FOUND", message=message)


class ConflictInProgress(ServiceError):
    def __init__(self, message: str = "Another operation is in progress for this cluster"):
        super().__init__(http_status=409, code="CONFLICT_IN_PROGRESS", message=message)


class InvalidStateTransition(ServiceError):
    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            http_status=409,
            code="INVALID_STATE_TRANSITION",
            message=f"invalid status transition: {from_status!r} -> {to_status!r}",
        )


class InvalidEngineConfig(ServiceError):
    def __init__(self, message: str = "Terraform rejected the configuration"):
        super().__init__(http_status=422, code="INVALID_ENGINE_CONFIG", message=message)


class StateRefreshError(ServiceError):
    def __init__(self, message: str = "Terraform could not load or refresh the prior state"):
        super().__init__(http_status=422, code="STATE_REFRESH_ERROR", message=message)


class MissingOutputs(ServiceError):
    def __init__(self, message: str = "Terraform apply produced no outputs"):
        super().__init__(http_status=500, code="MISSING_OUTPUTS", message=message)


class EngineError(ServiceError):
    def __init__(self, message: str = "Terraform command execution failed", *, http_status: int = 500, code: str = "ENGINE_ERROR"):
        super().__init__(http_status=http_status, code=code, message=message)


class EngineTimeout(EngineError):
    def __init__(self, message: str = "Terraform command timed out"):
        super().__init__(message, http_status=504, code="ENGINE_TIMEOUT")


class CleanupFailed(ServiceError):
    def __init__(self, message: str = "Failed to remove the terraform workspace"):
        super().__init__(http_status=500, code="CLEANUP_FAILED", message=message)


class DatabaseError(ServiceError):
    def __init__(self, message: str = "Database operation failed"):
        super().__init__(http_status=500, code="DATABASE_ERROR", message=message)


class ConfigurationError(ServiceError):
    def __init__(self, message: str = "Invalid service configuration"):
        super().__init__(http_status=500, code="CONFIGURATION_ERROR", message=message)
