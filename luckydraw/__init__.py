from .streams import (
    RedisStreamClient,
    STREAM_DRAW_STATE,
    STREAM_WINNERS_FINALIZED,
)
from .database import Database, Base
from .config import Settings
from .errors import (
    DrawError,
    DrawValidationError,
    SessionBusyError,
    InvalidTransitionError,
    LeaseNotHeldError,
    VersionConflictError,
    RecordNotFoundError,
    TransientError,
    FinalizationError,
)
from .retry import RetryPolicy
from .schemas import DrawSession, Phase, ParticipantSnapshot, WinnerEntry
from .channel import DrawStateChannel
from .lease import SessionLease
from .advisory import LocalAdvisoryStore
from .repository import Repository
from .finalizer import WinnerFinalizer, FinalizeResult, FinalizeStatus
from .cleanup import PoolCleaner
from .controller import DrawController, ControllerRole
from .display import DisplayRenderer, DisplayMode
from .export import export_csv
from .health import create_health_router
from .logging_config import configure_logging
from .telemetry import setup_telemetry, instrument_fastapi, get_tracer, draw_span
from .events import send_draw_event
from . import metrics

__all__ = [
    "RedisStreamClient",
    "STREAM_DRAW_STATE",
    "STREAM_WINNERS_FINALIZED",
    "Database",
    "Base",
    "Settings",
    "DrawError",
    "DrawValidationError",
    "SessionBusyError",
    "InvalidTransitionError",
    "LeaseNotHeldError",
    "VersionConflictError",
    "RecordNotFoundError",
    "TransientError",
    "FinalizationError",
    "RetryPolicy",
    "DrawSession",
    "Phase",
    "ParticipantSnapshot",
    "WinnerEntry",
    "DrawStateChannel",
    "SessionLease",
    "LocalAdvisoryStore",
    "Repository",
    "WinnerFinalizer",
    "FinalizeResult",
    "FinalizeStatus",
    "PoolCleaner",
    "DrawController",
    "ControllerRole",
    "DisplayRenderer",
    "DisplayMode",
    "export_csv",
    "create_health_router",
    "configure_logging",
    "setup_telemetry",
    "instrument_fastapi",
    "get_tracer",
    "draw_span",
    "send_draw_event",
    "metrics",
]
