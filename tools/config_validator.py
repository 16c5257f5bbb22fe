"""
Configuration Validation Module

Validates app.yaml and engines.yaml against Pydantic schemas.
Ensures config files are correct before any engine is started.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_SYMBOLS = ["BTC", "ETH", "SOL", "XRP", "BCH"]

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


# ===== Engine Risk Schema =====
class StopLossTier(BaseModel):
    """Stop-loss threshold applied at or above a leverage level"""
    min_leverage: int = Field(ge=1, description="Tier applies when leverage >= this value")
    threshold_pct: float = Field(lt=0, description="Close when pnl% <= this value")


class TrailingTier(BaseModel):
    """Trailing stop level unlocked once pnl% reaches a trigger"""
    trigger_pct: float = Field(gt=0, description="Tier unlocks when pnl% >= this value")
    floor_pct: float = Field(description="Close when pnl% falls below this value")


class RiskParams(BaseModel):
    """Per-engine risk parameters"""
    stop_loss_usdt: float = Field(default=50.0, gt=0, description="Account stop-loss in USDT")
    take_profit_usdt: float = Field(default=20000.0, gt=0, description="Account take-profit in USDT")
    max_positions: int = Field(default=5, gt=0, description="Max concurrently open positions")
    max_leverage: int = Field(default=15, ge=1, le=125, description="Max leverage per position")
    symbols: List[str] = Field(default_factory=lambda: list(DEFAULT_SYMBOLS), min_length=1)
    interval_seconds: int = Field(default=60, gt=0, description="Cycle interval")
    max_holding_hours: float = Field(default=36.0, gt=0, description="Forced close after this many hours")
    default_stop_loss_pct: float = Field(default=-5.0, lt=0, description="Stop-loss below every tier")
    stop_loss_tiers: List[StopLossTier] = Field(
        default_factory=lambda: [
            StopLossTier(min_leverage=12, threshold_pct=-3.0),
            StopLossTier(min_leverage=8, threshold_pct=-4.0),
        ]
    )
    trailing_tiers: List[TrailingTier] = Field(
        default_factory=lambda: [
            TrailingTier(trigger_pct=8.0, floor_pct=3.0),
            TrailingTier(trigger_pct=15.0, floor_pct=8.0),
            TrailingTier(trigger_pct=25.0, floor_pct=15.0),
        ]
    )
    peak_drawdown_activation_pct: float = Field(default=5.0, ge=0)
    peak_drawdown_close_pct: float = Field(default=30.0, gt=0, le=100)

    @field_validator('symbols')
    @classmethod
    def normalize_symbols(cls, v: List[str]) -> List[str]:
        """Upper-case base symbols and drop a trailing _USDT suffix"""
        cleaned = []
        for symbol in v:
            base = symbol.strip().upper().replace("_USDT", "")
            if not base:
                raise ValueError("Empty symbol in universe")
            if base not in cleaned:
                cleaned.append(base)
        return cleaned

    @field_validator('stop_loss_tiers')
    @classmethod
    def sort_stop_loss_tiers(cls, v: List[StopLossTier]) -> List[StopLossTier]:
        return sorted(v, key=lambda t: t.min_leverage, reverse=True)

    @field_validator('trailing_tiers')
    @classmethod
    def sort_trailing_tiers(cls, v: List[TrailingTier]) -> List[TrailingTier]:
        tiers = sorted(v, key=lambda t: t.trigger_pct)
        for tier in tiers:
            if tier.floor_pct >= tier.trigger_pct:
                raise ValueError(
                    f"Trailing floor {tier.floor_pct} must be below its trigger {tier.trigger_pct}"
                )
        return tiers


class EngineSeed(BaseModel):
    """Engine definition from engines.yaml"""
    id: int = Field(gt=0)
    name: str = Field(min_length=1)
    description: str = ""
    api_key: str = ""
    api_secret: str = ""
    model_name: str = Field(default="deepseek/deepseek-chat")
    strategy: str = Field(default="balanced", pattern="^(conservative|balanced|aggressive)$")
    status: str = Field(default="stopped", pattern="^(running|stopped|error)$")
    risk_params: RiskParams = Field(default_factory=RiskParams)


class EnginesSchema(BaseModel):
    """Complete engines configuration schema"""
    engines: List[EngineSeed] = Field(default_factory=list)

    @model_validator(mode='after')
    def unique_ids(self):
        ids = [engine.id for engine in self.engines]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate engine ids: {ids}")
        return self


# ===== App Schema =====
class ExchangeConfig(BaseModel):
    """Exchange adapter parameters"""
    base_url: str = Field(default="https://api.gateio.ws/api/v4")
    settle: str = Field(default="usdt", pattern="^(usdt|btc)$")
    testnet: bool = False
    timeout_seconds: float = Field(default=20.0, gt=0)
    read_retries: int = Field(default=2, ge=0, le=10)
    retry_backoff_ms: int = Field(default=300, ge=0)


class ExecutionConfig(BaseModel):
    """Execution parameters"""
    fee_rate: float = Field(default=0.0005, ge=0, lt=0.01, description="Taker fee per leg")
    default_multiplier: float = Field(default=0.01, gt=0)
    fill_poll_attempts: int = Field(default=5, ge=1)
    fill_poll_interval_ms: int = Field(default=500, ge=0)
    open_slippage_pct: float = Field(default=2.0, gt=0, le=100)
    close_slippage_pct: float = Field(default=3.0, gt=0, le=100)


class LoggingConfig(BaseModel):
    """Logging parameters"""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default="logs/perpguard.log")


class MonitoringConfig(BaseModel):
    """Metrics and alerting"""
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9090, gt=0, lt=65536)
    alerts_enabled: bool = False
    alert_webhook_url: Optional[str] = None
    alert_min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")


class ModelConfig(BaseModel):
    """Decision proposer endpoint"""
    provider: str = Field(default="openrouter", pattern="^(openrouter|openai|rules)$")
    base_url: str = Field(default="https://openrouter.ai/api/v1")
    api_key: str = ""
    temperature: float = Field(default=0.4, ge=0, le=2)
    max_tokens: int = Field(default=1200, gt=0)
    max_tool_rounds: int = Field(default=5, ge=1)
    timeout_seconds: float = Field(default=60.0, gt=0)


class AppConfig(BaseModel):
    """Complete app configuration schema"""
    database_path: str = Field(default="data/perpguard.db", min_length=1)
    audit_file: Optional[str] = Field(default="logs/cycles.jsonl")
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)


# ===== Loading =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def expand_env(value: Any) -> Any:
    """Replace ${VAR} placeholders with environment values (empty if unset)."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    return value


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return expand_env(yaml.safe_load(f) or {})
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def load_app_config(config_dir: str = "config") -> AppConfig:
    return AppConfig(**load_yaml_file(Path(config_dir) / "app.yaml"))


def load_engine_seeds(config_dir: str = "config") -> List[EngineSeed]:
    path = Path(config_dir) / "engines.yaml"
    if not path.exists():
        return []
    return EnginesSchema(**load_yaml_file(path)).engines


def _validate_file(path: Path, schema, required: bool = True) -> List[str]:
    errors = []
    name = path.name

    if not required and not path.exists():
        return errors

    try:
        schema(**load_yaml_file(path))
        logger.info(f"✅ {name} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{name}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{name}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{name}: {field}: {error['msg']}")
    except Exception as e:
        errors.append(f"{name}: Unexpected error - {e}")

    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir / "app.yaml", AppConfig)


def validate_engines(config_dir: Path) -> List[str]:
    """Validate engines.yaml against schema (optional file)."""
    return _validate_file(config_dir / "engines.yaml", EnginesSchema, required=False)


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_engines(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
