"""privacy-guard: sensitive-data masking and compliance operations for messaging."""

from .compliance import ComplianceCenter, ComplianceConfig
from .config import Services, create_services, load_config, load_from_yaml
from .crypto import FieldCipher, generate_key
from .engine import EngineConfig, MaskingEngine
from .errors import (
    ConfigError,
    CryptoError,
    InvalidTransitionError,
    NotFoundError,
    PrivacyGuardError,
    StorageError,
    ValidationError,
)
from .middleware import MessageGuard
from .models import ComplianceReport, PolicyRule, UnmaskingRequest
from .store import SqliteStore
from .types import DataType, Detection, MaskingResult, PrivacySettings, RequestStatus, Severity
from .vault import IdentityVault

__all__ = [
    "MaskingEngine", "EngineConfig",
    "ComplianceCenter", "ComplianceConfig",
    "IdentityVault",
    "MessageGuard",
    "SqliteStore",
    "FieldCipher", "generate_key",
    "Services", "create_services", "load_config", "load_from_yaml",
    "DataType", "Detection", "MaskingResult", "PrivacySettings", "RequestStatus", "Severity",
    "ComplianceReport", "PolicyRule", "UnmaskingRequest",
    "PrivacyGuardError", "NotFoundError", "ValidationError", "StorageError",
    "CryptoError", "InvalidTransitionError", "ConfigError",
]
__version__ = "0.1.0"
