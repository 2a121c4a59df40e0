"""
Configuration
=============

YAML configuration loading and validation at startup.

Features:
- Typed dataclass configuration for every component
- Range and type checks with clear error paths
- Strategy kinds and parameters validated before anything is bound
- Strict mode raising ConfigValidationError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from core.scheduler import SchedulerConfig
from core.state_store import StateStoreConfig
from core.strategy_types import StrategyType, UnknownStrategyTypeError, strategy_class
from core.venue import VenueFailure

logger = logging.getLogger(__name__)


class ConfigValidationError(ValueError):
    """Raised when configuration validation fails in strict mode."""

    def __init__(self, message: str, result: "ValidationResult"):
        super().__init__(message)
        self.result = result


class ValidationSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ValidationIssue:
    severity: ValidationSeverity
    path: str
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.value.upper()}] {self.path}: {self.message}"


@dataclass
class ValidationResult:
    """Complete validation result."""
    valid: bool = True
    issues: list[ValidationIssue] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def add_error(self, path: str, message: str) -> None:
        self.issues.append(ValidationIssue(ValidationSeverity.ERROR, path, message))
        self.valid = False

    def add_warning(self, path: str, message: str) -> None:
        self.issues.append(ValidationIssue(ValidationSeverity.WARNING, path, message))

    def get_errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]

    def summary(self) -> str:
        status = "VALID" if self.valid else "INVALID"
        return (
            f"Config validation: {status} "
            f"({len(self.get_errors())} errors, {len(self.get_warnings())} warnings)"
        )


@dataclass
class EventBusConfig:
    max_queue_size: int = 10000


@dataclass
class LoggingConfig:
    log_dir: str = "logs"
    level: str = "INFO"
    json: bool = False
    audit_file: str = "logs/audit.jsonl"
    trade_file: str = "logs/trades.jsonl"


@dataclass
class PaperVenueConfig:
    seed: int | None = None
    latency_seconds: float = 0.0
    failure_rates: dict[str, float] = field(default_factory=dict)
    markets: list[dict[str, Any]] = field(default_factory=list)
    recurring_markets: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class StrategyBindingConfig:
    """A strategy kind to bind to an account, with its merged parameters."""
    strategy_type: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class AccountConfig:
    """One configured trading account. Credentials are handled outside this system."""
    account_id: str
    name: str = ""
    max_risk: float = 1000.0
    risk_reset_policy: str = "daily"
    enabled: bool = True
    strategies: list[str] = field(default_factory=list)
    strategy_params: dict[str, dict[str, Any]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountConfig":
        return cls(
            account_id=str(data.get("id") or data.get("account_id")),
            name=data.get("name", "") or "",
            max_risk=float(data.get("max_risk", 1000.0)),
            risk_reset_policy=data.get("risk_reset_policy", "daily"),
            enabled=bool(data.get("enabled", True)),
            strategies=list(data.get("strategies") or []),
            strategy_params=dict(data.get("strategy_params") or {}),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class EngineConfig:
    """Top-level configuration of the orchestrator."""
    name: str = "orchestrator"
    mode: str = "paper"
    persist_interval_seconds: float = 300.0
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    state: StateStoreConfig = field(default_factory=StateStoreConfig)
    event_bus: EventBusConfig = field(default_factory=EventBusConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    paper_venue: PaperVenueConfig = field(default_factory=PaperVenueConfig)
    strategy_defaults: dict[str, dict[str, Any]] = field(default_factory=dict)
    accounts: list[AccountConfig] = field(default_factory=list)

    def bindings_for(self, account: AccountConfig) -> list[StrategyBindingConfig]:
        """Strategy kinds of an account; global defaults overridden by the account's own values."""
        bindings = []
        for kind in account.strategies:
            strategy_type = StrategyType.parse(kind).value
            bindings.append(StrategyBindingConfig(
                strategy_type=strategy_type,
                parameters={
                    **self.strategy_defaults.get(strategy_type, {}),
                    **account.strategy_params.get(strategy_type, {}),
                },
            ))
        return bindings


_RESET_POLICIES = {"never", "hourly", "daily"}
_MODES = {"paper", "live"}


def _check_positive(result: ValidationResult, path: str, value: Any, allow_zero: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        result.add_error(path, f"must be a number, got {value!r}")
    elif value < 0 or (value == 0 and not allow_zero):
        result.add_error(path, f"must be {'>= 0' if allow_zero else '> 0'}, got {value}")


def validate_config(data: dict[str, Any], strict: bool = False) -> ValidationResult:
    """
    Validate a raw configuration mapping.

    Raises:
        ConfigValidationError: if strict and any error was found
    """
    result = ValidationResult()

    engine = data.get("engine", {}) or {}
    mode = engine.get("mode", "paper")
    if mode not in _MODES:
        result.add_error("engine.mode", f"must be one of {sorted(_MODES)}, got {mode!r}")
    elif mode == "live":
        result.add_warning("engine.mode", "live mode requires an external venue client")
    if "persist_interval_seconds" in engine:
        _check_positive(result, "engine.persist_interval_seconds", engine["persist_interval_seconds"])

    scheduler = data.get("scheduler", {}) or {}
    if "interval_seconds" in scheduler:
        _check_positive(result, "scheduler.interval_seconds", scheduler["interval_seconds"])
    if "max_concurrent_executions" in scheduler:
        value = scheduler["max_concurrent_executions"]
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            result.add_error("scheduler.max_concurrent_executions", f"must be an integer >= 1, got {value!r}")
    if "execution_risk_cost" in scheduler:
        _check_positive(result, "scheduler.execution_risk_cost", scheduler["execution_risk_cost"], allow_zero=True)

    state = data.get("state", {}) or {}
    if "max_backups" in state:
        _check_positive(result, "state.max_backups", state["max_backups"], allow_zero=True)

    paper = data.get("paper_venue", {}) or {}
    scenarios = {s.value for s in VenueFailure}
    for scenario, probability in (paper.get("failure_rates") or {}).items():
        path = f"paper_venue.failure_rates.{scenario}"
        if scenario not in scenarios:
            result.add_error(path, f"unknown scenario, expected one of {sorted(scenarios)}")
        elif not isinstance(probability, (int, float)) or not 0 <= probability <= 1:
            result.add_error(path, f"must be a probability within [0, 1], got {probability!r}")
    for i, market in enumerate(paper.get("recurring_markets") or []):
        if not isinstance(market, dict) or not market.get("id"):
            result.add_error(f"paper_venue.recurring_markets[{i}]", "recurring market needs an id")

    defaults = data.get("strategies", {}) or {}
    for kind in defaults:
        try:
            StrategyType.parse(kind)
        except UnknownStrategyTypeError as e:
            result.add_error(f"strategies.{kind}", str(e))

    accounts = data.get("accounts", []) or []
    if not isinstance(accounts, list):
        result.add_error("accounts", "must be a list")
        accounts = []
    if not accounts:
        result.add_warning("accounts", "no accounts configured")

    seen: set[str] = set()
    for i, account in enumerate(accounts):
        path = f"accounts[{i}]"
        account_id = account.get("id") or account.get("account_id")
        if not account_id:
            result.add_error(f"{path}.id", "is required")
            continue
        if account_id in seen:
            result.add_error(f"{path}.id", f"duplicate account id {account_id!r}")
        seen.add(account_id)

        if "max_risk" in account:
            _check_positive(result, f"{path}.max_risk", account["max_risk"])
        policy = account.get("risk_reset_policy", "daily")
        if policy not in _RESET_POLICIES:
            result.add_error(f"{path}.risk_reset_policy", f"must be one of {sorted(_RESET_POLICIES)}")

        account_params = account.get("strategy_params", {}) or {}
        for kind in account.get("strategies", []) or []:
            try:
                strategy_type = StrategyType.parse(kind)
            except UnknownStrategyTypeError as e:
                result.add_error(f"{path}.strategies", str(e))
                continue
            params = {
                **(defaults.get(strategy_type.value, {}) or {}),
                **(account_params.get(strategy_type.value, {}) or {}),
            }
            try:
                strategy_class(strategy_type).validate_parameters(params)
            except ValueError as e:
                result.add_error(f"{path}.strategy_params.{strategy_type.value}", str(e))

    if result.valid:
        logger.info(result.summary())
    else:
        logger.error(result.summary())
        for issue in result.get_errors():
            logger.error(str(issue))
    for issue in result.get_warnings():
        logger.warning(str(issue))

    if strict and not result.valid:
        details = "\n".join(str(i) for i in result.get_errors())
        raise ConfigValidationError(f"Configuration validation failed:\n{details}", result)

    return result


def config_from_dict(data: dict[str, Any]) -> EngineConfig:
    """Build typed configuration from a (validated) mapping."""
    engine = data.get("engine", {}) or {}
    scheduler = data.get("scheduler", {}) or {}
    state = data.get("state", {}) or {}
    event_bus = data.get("event_bus", {}) or {}
    logging_cfg = data.get("logging", {}) or {}
    paper = data.get("paper_venue", {}) or {}

    return EngineConfig(
        name=engine.get("name", "orchestrator"),
        mode=engine.get("mode", "paper"),
        persist_interval_seconds=float(engine.get("persist_interval_seconds", 300.0)),
        scheduler=SchedulerConfig(
            interval_seconds=float(scheduler.get("interval_seconds", 60.0)),
            max_concurrent_executions=int(scheduler.get("max_concurrent_executions", 10)),
            execution_risk_cost=float(scheduler.get("execution_risk_cost", 100.0)),
            execution_timeout_seconds=scheduler.get("execution_timeout_seconds"),
        ),
        state=StateStoreConfig(
            state_dir=state.get("state_dir", "state"),
            max_backups=int(state.get("max_backups", 3)),
            stats_save_every_ticks=int(state.get("stats_save_every_ticks", 10)),
        ),
        event_bus=EventBusConfig(max_queue_size=int(event_bus.get("max_queue_size", 10000))),
        logging=LoggingConfig(
            log_dir=logging_cfg.get("log_dir", "logs"),
            level=logging_cfg.get("level", "INFO"),
            json=bool(logging_cfg.get("json", False)),
            audit_file=logging_cfg.get("audit_file", "logs/audit.jsonl"),
            trade_file=logging_cfg.get("trade_file", "logs/trades.jsonl"),
        ),
        paper_venue=PaperVenueConfig(
            seed=paper.get("seed"),
            latency_seconds=float(paper.get("latency_seconds", 0.0)),
            failure_rates=dict(paper.get("failure_rates") or {}),
            markets=list(paper.get("markets") or []),
            recurring_markets=list(paper.get("recurring_markets") or []),
        ),
        strategy_defaults={
            StrategyType.parse(kind).value: dict(params or {})
            for kind, params in (data.get("strategies", {}) or {}).items()
        },
        accounts=[AccountConfig.from_dict(a) for a in data.get("accounts", []) or []],
    )


def load_config(path: str | Path, strict: bool = True) -> EngineConfig:
    """Load, validate and build configuration from a YAML file."""
    config_file = Path(path)
    if not config_file.exists():
        logger.error(f"Config file not found: {config_file}")
        raise FileNotFoundError(f"Config file not found: {config_file}")

    with open(config_file, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    logger.info(f"Loaded configuration from {config_file}")
    validate_config(data, strict=strict)
    return config_from_dict(data)
