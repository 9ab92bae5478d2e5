"""Session supervision engine: agent processes, stream decoding, pricing."""
from .accumulator import ConversationAccumulator, ParseResult
from .config import SupervisorConfig
from .errors import (
    AgentSpawnError,
    BrokerShutdownError,
    ConfigError,
    PermissionBrokerError,
    SessionNotFoundError,
    SupervisorError,
)
from .pricing import DEFAULT_PRICING, ModelRates, PriceTable
from .stream_decoder import StreamEvent, StreamEventDecoder

__all__ = [
    # Core (lazy import to avoid circular deps with convoy.permissions)
    "SessionSupervisor",
    "AgentLauncher",
    # Stream handling
    "ConversationAccumulator",
    "ParseResult",
    "StreamEvent",
    "StreamEventDecoder",
    # Config
    "SupervisorConfig",
    "DEFAULT_PRICING",
    "ModelRates",
    "PriceTable",
    # YAML config (lazy import)
    "load_yaml_config",
    # Errors
    "AgentSpawnError",
    "BrokerShutdownError",
    "ConfigError",
    "PermissionBrokerError",
    "SessionNotFoundError",
    "SupervisorError",
]


def __getattr__(name: str):
    if name == "SessionSupervisor":
        from .supervisor import SessionSupervisor
        return SessionSupervisor
    if name == "AgentLauncher":
        from .launcher import AgentLauncher
        return AgentLauncher
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
