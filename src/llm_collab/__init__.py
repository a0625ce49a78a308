"""Multi-provider collaboration core: strategies, synthesis and provider management."""

from .app import build_orchestrator
from .cache import MemoryCache, SingleFlight
from .config import AppConfig, ProviderConfig
from .errors import CollabError, ErrorKind, classify_error, is_retryable
from .loader import load_config
from .models import (
    CollaborationResult,
    PerformanceMetrics,
    ProviderOutcome,
    SynthesisMethod,
    SynthesisResult,
)
from .orchestrator import AdmissionController, CollaborationOrchestrator
from .provider_manager import ProviderManager
from .provider_spi import Request, Response, TokenUsage, validate_request
from .strategies import (
    ConsensusConfig,
    IterativeConfig,
    ParallelConfig,
    SequentialConfig,
    execute_strategy,
    strategy_from_name,
)
from .synthesis import SynthesisEngine, SynthesisOptions

__all__ = [
    "AdmissionController",
    "AppConfig",
    "CollabError",
    "CollaborationOrchestrator",
    "CollaborationResult",
    "ConsensusConfig",
    "ErrorKind",
    "IterativeConfig",
    "MemoryCache",
    "ParallelConfig",
    "PerformanceMetrics",
    "ProviderConfig",
    "ProviderManager",
    "ProviderOutcome",
    "Request",
    "Response",
    "SequentialConfig",
    "SingleFlight",
    "SynthesisEngine",
    "SynthesisMethod",
    "SynthesisOptions",
    "SynthesisResult",
    "TokenUsage",
    "build_orchestrator",
    "classify_error",
    "execute_strategy",
    "is_retryable",
    "load_config",
    "strategy_from_name",
    "validate_request",
]
