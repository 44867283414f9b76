"""Runtime configuration for toolrelay."""

import os
from dataclasses import dataclass, fields


@dataclass
class ToolRelayConfig:
    """Configuration for tool execution and conversation bookkeeping.

    Every field can be overridden through a ``TOOLRELAY_<FIELD>`` environment
    variable when the config is built with :meth:`from_env`.
    """

    default_timeout_ms: int = 5_000
    max_tool_calls: int = 5
    max_concurrency: int = 4
    max_turns: int = 10
    chunk_timeout_s: float = 30.0

    # Circuit breaker
    use_breaker: bool = True
    breaker_threshold: int = 5
    breaker_cooldown_s: float = 30.0

    # Conversations
    conversation_ttl_s: float = 24 * 60 * 60

    # Reject missing required arguments during coercion
    strict_required: bool = True

    @classmethod
    def from_env(cls, prefix: str = "TOOLRELAY_") -> "ToolRelayConfig":
        """Build a config from environment variables, keeping defaults for unset ones."""
        overrides: dict[str, object] = {}
        for f in fields(cls):
            raw = os.getenv(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            if f.type in (bool, "bool"):
                overrides[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
            elif f.type in (int, "int"):
                overrides[f.name] = int(raw)
            else:
                overrides[f.name] = float(raw)
        return cls(**overrides)


_config: ToolRelayConfig | None = None


def get_config() -> ToolRelayConfig:
    """Get or create the process-wide config instance."""
    global _config
    if _config is None:
        _config = ToolRelayConfig.from_env()
    return _config
