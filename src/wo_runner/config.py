"""Runtime configuration for the work-order runner."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_MODEL = "claude-sonnet-4-5"


@dataclass(slots=True)
class LoopSettings:
    """Turn loop budgets and thresholds."""

    checkpoint_seconds: float = 350.0
    timeout_seconds: float = 380.0
    stall_window: int = 5
    max_history_pairs: int = 20
    remediation_history_pairs: int = 15
    emergency_history_pairs: int = 4
    max_api_errors: int = 5
    max_too_large_errors: int = 3
    api_retry_delay_seconds: float = 2.0
    max_tokens: int = 4096


@dataclass(slots=True)
class CircuitBreakerSettings:
    """Checkpoint thresholds and remediation limits."""

    stable_checkpoints: int = 3
    hard_cap_checkpoints: int = 8
    max_remediation_depth: int = 1


@dataclass(slots=True)
class ProviderSettings:
    """Completion API credentials and endpoints."""

    default_model: str = DEFAULT_MODEL
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    openai_api_key: str = ""
    openai_base_url: str = "https://openrouter.ai/api/v1"
    request_timeout_seconds: float = 300.0


@dataclass(slots=True)
class ProxySettings:
    """Server-side tool proxy settings."""

    enabled: bool = True
    base_url: str = ""
    token: str = ""
    timeout_seconds: float = 120.0
    flag_cache_seconds: float = 60.0


@dataclass(slots=True)
class EscalationSettings:
    """Ordered model ladders per executor role."""

    tiers: dict[str, tuple[str, ...]] = field(default_factory=dict)


@dataclass(slots=True)
class ToolAccessSettings:
    """Per-role tool allow-lists; a missing role may use every tool."""

    role_tools: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def allowed_for(self, role: str) -> frozenset[str] | None:
        tools = self.role_tools.get(role)
        if tools is None:
            return None
        return frozenset(tools)


@dataclass(slots=True)
class BatchSettings:
    """Wave execution settings."""

    parallel_slots: int = 3
    max_waves: int = 100
    max_invocations: int = 20


@dataclass(slots=True)
class UserContextSettings:
    """Acting identity recorded on events and mutations."""

    actor: str = "wo-runner"
    default_role: str = "builder"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".wo_runner.db")
    workdir_root: Path = Path(".wo_runner_workdirs")
    sqlite_busy_timeout_ms: int = 5000
    loop: LoopSettings = field(default_factory=LoopSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    proxy: ProxySettings = field(default_factory=ProxySettings)
    escalation: EscalationSettings = field(default_factory=EscalationSettings)
    tool_access: ToolAccessSettings = field(default_factory=ToolAccessSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("WO_RUNNER_DB_PATH", ".wo_runner.db")),
            workdir_root=Path(os.getenv("WO_RUNNER_WORKDIR", ".wo_runner_workdirs")),
            sqlite_busy_timeout_ms=int(os.getenv("WO_RUNNER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            loop=LoopSettings(
                checkpoint_seconds=float(os.getenv("WO_RUNNER_CHECKPOINT_SECONDS", "350")),
                timeout_seconds=float(os.getenv("WO_RUNNER_TIMEOUT_SECONDS", "380")),
                stall_window=int(os.getenv("WO_RUNNER_STALL_WINDOW", "5")),
                max_history_pairs=int(os.getenv("WO_RUNNER_MAX_HISTORY_PAIRS", "20")),
                remediation_history_pairs=int(
                    os.getenv("WO_RUNNER_REMEDIATION_HISTORY_PAIRS", "15"),
                ),
                emergency_history_pairs=int(
                    os.getenv("WO_RUNNER_EMERGENCY_HISTORY_PAIRS", "4"),
                ),
                max_api_errors=int(os.getenv("WO_RUNNER_MAX_API_ERRORS", "5")),
                max_too_large_errors=int(os.getenv("WO_RUNNER_MAX_TOO_LARGE_ERRORS", "3")),
                api_retry_delay_seconds=float(
                    os.getenv("WO_RUNNER_API_RETRY_DELAY_SECONDS", "2.0"),
                ),
                max_tokens=int(os.getenv("WO_RUNNER_MAX_TOKENS", "4096")),
            ),
            circuit_breaker=CircuitBreakerSettings(
                stable_checkpoints=int(os.getenv("WO_RUNNER_STABLE_CHECKPOINTS", "3")),
                hard_cap_checkpoints=int(os.getenv("WO_RUNNER_HARD_CAP_CHECKPOINTS", "8")),
                max_remediation_depth=int(os.getenv("WO_RUNNER_MAX_REMEDIATION_DEPTH", "1")),
            ),
            provider=ProviderSettings(
                default_model=os.getenv("WO_RUNNER_DEFAULT_MODEL", DEFAULT_MODEL),
                anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
                anthropic_base_url=os.getenv(
                    "WO_RUNNER_ANTHROPIC_BASE_URL",
                    "https://api.anthropic.com",
                ),
                openai_api_key=os.getenv(
                    "OPENROUTER_API_KEY",
                    os.getenv("OPENAI_API_KEY", ""),
                ),
                openai_base_url=os.getenv(
                    "WO_RUNNER_OPENAI_BASE_URL",
                    "https://openrouter.ai/api/v1",
                ),
                request_timeout_seconds=float(
                    os.getenv("WO_RUNNER_PROVIDER_TIMEOUT_SECONDS", "300"),
                ),
            ),
            proxy=ProxySettings(
                enabled=_env_bool("WO_RUNNER_PROXY_ENABLED", default=True),
                base_url=os.getenv("WO_RUNNER_PROXY_BASE_URL", "").strip(),
                token=os.getenv("WO_RUNNER_PROXY_TOKEN", ""),
                timeout_seconds=float(os.getenv("WO_RUNNER_PROXY_TIMEOUT_SECONDS", "120")),
                flag_cache_seconds=float(os.getenv("WO_RUNNER_PROXY_FLAG_CACHE_SECONDS", "60")),
            ),
            escalation=EscalationSettings(
                tiers=_parse_role_map("WO_RUNNER_ESCALATION_TIERS"),
            ),
            tool_access=ToolAccessSettings(
                role_tools=_parse_role_map("WO_RUNNER_ROLE_TOOLS"),
            ),
            batch=BatchSettings(
                parallel_slots=int(os.getenv("WO_RUNNER_PARALLEL_SLOTS", "3")),
                max_waves=int(os.getenv("WO_RUNNER_MAX_WAVES", "100")),
                max_invocations=int(os.getenv("WO_RUNNER_MAX_INVOCATIONS", "20")),
            ),
            user_context=UserContextSettings(
                actor=os.getenv("WO_RUNNER_ACTOR", "wo-runner"),
                default_role=os.getenv("WO_RUNNER_DEFAULT_ROLE", "builder"),
            ),
        )

    def validate_for_run(self) -> None:
        """Raise configuration error if loop budgets are inconsistent."""

        loop = self.loop
        if loop.checkpoint_seconds <= 0:
            raise ValueError("WO_RUNNER_CHECKPOINT_SECONDS must be > 0.")
        if loop.checkpoint_seconds >= loop.timeout_seconds:
            raise ValueError(
                "WO_RUNNER_CHECKPOINT_SECONDS must be lower than WO_RUNNER_TIMEOUT_SECONDS.",
            )
        if loop.stall_window <= 0:
            raise ValueError("WO_RUNNER_STALL_WINDOW must be > 0.")
        if loop.emergency_history_pairs <= 0:
            raise ValueError("WO_RUNNER_EMERGENCY_HISTORY_PAIRS must be > 0.")
        if loop.max_history_pairs < loop.emergency_history_pairs:
            raise ValueError(
                "WO_RUNNER_MAX_HISTORY_PAIRS must be >= WO_RUNNER_EMERGENCY_HISTORY_PAIRS.",
            )
        if loop.max_api_errors <= 0 or loop.max_too_large_errors <= 0:
            raise ValueError("API error caps must be positive integers.")

        breaker = self.circuit_breaker
        if breaker.stable_checkpoints <= 0:
            raise ValueError("WO_RUNNER_STABLE_CHECKPOINTS must be > 0.")
        if breaker.stable_checkpoints >= breaker.hard_cap_checkpoints:
            raise ValueError(
                "WO_RUNNER_STABLE_CHECKPOINTS must be lower than WO_RUNNER_HARD_CAP_CHECKPOINTS.",
            )
        if breaker.max_remediation_depth < 0:
            raise ValueError("WO_RUNNER_MAX_REMEDIATION_DEPTH must be >= 0.")

        if self.batch.parallel_slots <= 0:
            raise ValueError("WO_RUNNER_PARALLEL_SLOTS must be > 0.")
        if self.proxy.base_url:
            _validate_http_url(self.proxy.base_url, name="WO_RUNNER_PROXY_BASE_URL")
        for role, models in self.escalation.tiers.items():
            if not models:
                raise ValueError(f"Escalation ladder for role {role!r} is empty.")


def _parse_role_map(name: str) -> dict[str, tuple[str, ...]]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return {}

    parsed: dict[str, tuple[str, ...]] = {}
    for part in raw.split(";"):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                f"Invalid {name} entry: {token!r}. Expected format 'role=item1,item2'.",
            )
        role, values_raw = token.split("=", 1)
        role = role.strip()
        if not role:
            raise ValueError(f"Invalid {name} entry: {token!r} (empty role).")
        values = tuple(value.strip() for value in values_raw.split(",") if value.strip())
        parsed[role] = values
    return parsed


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
