"""Core application utilities."""

from .clock import Clock, as_utc, utc_now
from .config import Settings, get_settings
from .database import (
    close_db,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
)
from .dependencies import (
    CallerDep,
    ClockDep,
    SessionDep,
    SessionFactoryDep,
    SettingsDep,
    get_clock,
    require_function_auth,
)
from .exceptions import (
    AlertAlreadyResolvedError,
    AlertNotFoundError,
    AuthenticationError,
    DeliveryError,
    MetricComputationError,
    PersistenceError,
    PipelineError,
)
from .security import (
    CallerIdentity,
    authenticate_request,
    sign_payload,
    signature_header_value,
    verify_signature,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Clock
    "Clock",
    "utc_now",
    "as_utc",
    # Database
    "get_engine",
    "get_session_factory",
    "get_session",
    "init_db",
    "close_db",
    # Dependencies
    "CallerDep",
    "ClockDep",
    "SessionDep",
    "SessionFactoryDep",
    "SettingsDep",
    "get_clock",
    "require_function_auth",
    # Errors
    "PipelineError",
    "AuthenticationError",
    "MetricComputationError",
    "PersistenceError",
    "DeliveryError",
    "AlertNotFoundError",
    "AlertAlreadyResolvedError",
    # Security
    "CallerIdentity",
    "authenticate_request",
    "sign_payload",
    "signature_header_value",
    "verify_signature",
]
