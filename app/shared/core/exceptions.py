from typing import Optional, Dict, Any

class ProvisioningException(Exception):
    """Base exception for all provisioning service errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

class ConfigurationError(ProvisioningException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)

class ResourceNotFoundError(ProvisioningException):
    """Raised when a requested resource is not found."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)

class ResourceConflictError(ProvisioningException):
    """Raised when a write would violate a uniqueness key."""
    def __init__(self, message: str, code: str = "uniqueness", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=409, details=details)
