"""
Configuration management and loading.

Handles the bot's YAML configuration document.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from ai_reply_guard.core.guardrails import RoleLimit
from ai_reply_guard.core.pricing import ModelPricing, PricingTable
from ai_reply_guard.storage.ledger import DEFAULT_LEDGER_PATH

DEFAULT_MODEL = "o4-mini"
DISPLAY_LIMIT = 2000  # Discord message length ceiling


@dataclass(frozen=True)
class BudgetConfig:
    """Daily spend ceilings."""
    daily: float
    role_limits: Tuple[RoleLimit, ...]
    default_limit: float

    def __post_init__(self):
        """Validate budget values are positive."""
        if self.daily <= 0:
            raise ValueError("daily budget must be > 0")
        if self.default_limit < 0:
            raise ValueError("default per-user limit cannot be negative")


@dataclass(frozen=True)
class CompletionConfig:
    """Limits applied to each exchange with the model."""
    max_output_tokens: int = 1500
    max_continuations: int = 5
    timeout_seconds: float = 60.0
    display_limit: int = DISPLAY_LIMIT

    def __post_init__(self):
        if self.max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be > 0")
        if self.max_continuations < 0:
            raise ValueError("max_continuations cannot be negative")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.display_limit <= 0:
            raise ValueError("display_limit must be > 0")


@dataclass(frozen=True)
class ReplyTexts:
    """User-facing notices, in the operator's language."""
    budget_global: str = "The daily AI budget has been used up. Please try again tomorrow."
    budget_user: str = "You have reached your daily AI limit."
    rejected: str = "Sorry, your request violates the safety policy."
    empty: str = "Sorry, I did not receive an answer from the AI. Please try again."
    failure: str = "Something went wrong while generating the AI reply."
    truncated: str = "(The answer was cut short.)"
    not_configured: str = "AI API key not configured."


@dataclass(frozen=True)
class BotConfig:
    """Complete bot configuration."""
    system_prompt: str
    memory_turns: int
    budget: BudgetConfig
    pricing: PricingTable
    role_ids: Dict[str, str]
    privileged_role: str
    model: str = DEFAULT_MODEL
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    replies: ReplyTexts = field(default_factory=ReplyTexts)
    ledger_path: str = DEFAULT_LEDGER_PATH
    placeholder: str = "[TRUSTEE]"

    @property
    def privileged_role_id(self) -> str:
        return self.role_ids[self.privileged_role]

    def roles_for_ids(self, platform_role_ids) -> Tuple[str, ...]:
        """Map platform role ids to configured role names."""
        held = {str(role_id) for role_id in platform_role_ids}
        return tuple(name for name, role_id in self.role_ids.items() if role_id in held)


_REQUIRED_KEYS = {'system_prompt', 'memory_turns', 'budget', 'pricing', 'role_ids', 'privileged_role'}
_OPTIONAL_KEYS = {'model', 'completion', 'replies', 'ledger_path', 'placeholder'}


def load_bot_config(path: str) -> BotConfig:
    """Load and validate bot configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected spend.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated BotConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config = _read_yaml(path)

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - _REQUIRED_KEYS - _OPTIONAL_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")
    missing_keys = _REQUIRED_KEYS - set(raw_config.keys())
    if missing_keys:
        raise ValueError(f"Missing required configuration keys: {sorted(missing_keys)}")

    system_prompt = raw_config['system_prompt']
    if not isinstance(system_prompt, str) or not system_prompt.strip():
        raise ValueError("'system_prompt' must be a non-empty string")

    memory_turns = raw_config['memory_turns']
    if not isinstance(memory_turns, int) or isinstance(memory_turns, bool) or memory_turns < 0:
        raise ValueError("'memory_turns' must be an integer >= 0")

    role_ids = _parse_role_ids(raw_config['role_ids'])

    privileged_role = raw_config['privileged_role']
    if privileged_role not in role_ids:
        raise ValueError(f"'privileged_role' must name a role in 'role_ids': {privileged_role}")

    model = raw_config.get('model', DEFAULT_MODEL)
    if not isinstance(model, str) or not model.strip():
        raise ValueError("'model' must be a non-empty string")

    placeholder = raw_config.get('placeholder', "[TRUSTEE]")
    if not isinstance(placeholder, str) or not placeholder:
        raise ValueError("'placeholder' must be a non-empty string")

    ledger_path = raw_config.get('ledger_path', DEFAULT_LEDGER_PATH)
    if not isinstance(ledger_path, str) or not ledger_path:
        raise ValueError("'ledger_path' must be a non-empty string")

    return BotConfig(
        system_prompt=system_prompt,
        memory_turns=memory_turns,
        budget=_parse_budget(raw_config['budget']),
        pricing=_parse_pricing(raw_config['pricing']),
        role_ids=role_ids,
        privileged_role=privileged_role,
        model=model,
        completion=_parse_completion(raw_config.get('completion') or {}),
        replies=_parse_replies(raw_config.get('replies') or {}),
        ledger_path=ledger_path,
        placeholder=placeholder
    )


def update_system_prompt(path: str, system_prompt: str) -> None:
    """Replace the system prompt in a configuration file.

    The rest of the document is preserved; the result is validated
    before the file is written.

    Raises:
        ValueError: If the new prompt is empty or the document is invalid
    """
    if not system_prompt or not system_prompt.strip():
        raise ValueError("system prompt cannot be empty")
    raw_config = _read_yaml(path)
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")
    raw_config['system_prompt'] = system_prompt

    config_path = Path(path)
    tmp_path = config_path.with_name(config_path.name + ".new")
    with open(tmp_path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(raw_config, f, allow_unicode=True, sort_keys=False)
    try:
        load_bot_config(str(tmp_path))
    except Exception:
        tmp_path.unlink()
        raise
    tmp_path.replace(config_path)


def _read_yaml(path: str) -> Any:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Bot config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")


def _parse_role_ids(data: Any) -> Dict[str, str]:
    if not isinstance(data, dict) or not data:
        raise ValueError("'role_ids' must be a non-empty dictionary")
    role_ids = {}
    for name, role_id in data.items():
        if isinstance(role_id, bool) or not isinstance(role_id, (str, int)) or not str(role_id):
            raise ValueError(f"'role_ids.{name}' must be a role id")
        role_ids[str(name)] = str(role_id)
    return role_ids


def _parse_budget(data: Any) -> BudgetConfig:
    """Parse the budget section.

    per_role_daily_limits keeps document order; that order decides which
    limit applies to a member holding several roles.
    """
    if not isinstance(data, dict):
        raise ValueError("'budget' must be a dictionary")

    allowed_keys = {'daily', 'per_role_daily_limits'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown budget keys: {unknown_keys}")
    if 'daily' not in data:
        raise ValueError("Missing required 'daily' budget")

    daily = _positive_number(data['daily'], "budget.daily", allow_zero=False)

    limits_data = data.get('per_role_daily_limits')
    if not isinstance(limits_data, dict):
        raise ValueError("'budget.per_role_daily_limits' must be a dictionary")
    if 'default' not in limits_data:
        raise ValueError("Missing required 'default' in budget.per_role_daily_limits")

    role_limits = []
    for role, limit in limits_data.items():
        if role == 'default':
            continue
        role_limits.append(RoleLimit(
            role=str(role),
            limit=_positive_number(limit, f"budget.per_role_daily_limits.{role}")
        ))

    return BudgetConfig(
        daily=daily,
        role_limits=tuple(role_limits),
        default_limit=_positive_number(limits_data['default'], "budget.per_role_daily_limits.default")
    )


def _parse_pricing(data: Any) -> PricingTable:
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")
    if 'default' not in data:
        raise ValueError("Missing required 'default' in pricing")

    prices = {}
    for model, rates in data.items():
        if model == 'default':
            continue
        prices[str(model)] = _parse_rates(rates, f"pricing.{model}")

    return PricingTable(prices=prices, default=_parse_rates(data['default'], "pricing.default"))


def _parse_rates(data: Any, path: str) -> ModelPricing:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    allowed_keys = {'input', 'output'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    for key in ('input', 'output'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
    return ModelPricing(
        input_per_million=_decimal_rate(data['input'], f"{path}.input"),
        output_per_million=_decimal_rate(data['output'], f"{path}.output")
    )


def _parse_completion(data: Any) -> CompletionConfig:
    if not isinstance(data, dict):
        raise ValueError("'completion' must be a dictionary")
    allowed_keys = {'max_output_tokens', 'max_continuations', 'timeout_seconds', 'display_limit'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown completion keys: {unknown_keys}")
    for key in ('max_output_tokens', 'max_continuations', 'display_limit'):
        value = data.get(key)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
            raise ValueError(f"'completion.{key}' must be an integer")
    timeout = data.get('timeout_seconds')
    if timeout is not None and (not isinstance(timeout, (int, float)) or isinstance(timeout, bool)):
        raise ValueError("'completion.timeout_seconds' must be a number")
    return CompletionConfig(**{key: value for key, value in data.items() if value is not None})


def _parse_replies(data: Any) -> ReplyTexts:
    if not isinstance(data, dict):
        raise ValueError("'replies' must be a dictionary")
    allowed_keys = set(ReplyTexts.__dataclass_fields__)
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown reply keys: {unknown_keys}")
    for key, value in data.items():
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"'replies.{key}' must be a non-empty string")
    return ReplyTexts(**data)


def _positive_number(value: Any, path: str, allow_zero: bool = True) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"'{path}' must be {'>= 0' if allow_zero else '> 0'}")
    return float(value)


def _decimal_rate(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if rate < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return rate
