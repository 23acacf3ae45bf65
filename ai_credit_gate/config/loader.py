"""
Configuration management and loading.

Handles gateway settings from an optional YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

import yaml

from ai_credit_gate.storage.models import Plan

DEFAULT_BASE_URL = "https://api.emergent.sh/v1"


@dataclass(frozen=True)
class ProviderConfig:
    """Connection and retry settings for the generation provider."""
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    timeout_seconds: float = 60.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    model: str = "emergent-1"
    temperature: float = 0.7
    max_tokens: int = 2048

    def __post_init__(self):
        """Validate provider values."""
        if not self.base_url:
            raise ValueError("base_url cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_base_delay < 0:
            raise ValueError("retry_base_delay must be >= 0")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key.strip())


@dataclass(frozen=True)
class GenerationPricing:
    """Three-tier generation prices and the thresholds that select them."""
    basic: Decimal = Decimal("2.00")
    standard: Decimal = Decimal("5.00")
    advanced: Decimal = Decimal("10.00")
    standard_prompt_length: int = 500
    standard_output_size: int = 50_000
    advanced_prompt_length: int = 1000
    advanced_output_size: int = 100_000
    advanced_file_count: int = 20

    def __post_init__(self):
        """Validate tier ordering."""
        if self.basic <= 0:
            raise ValueError("generation prices must be > 0")
        if not self.basic <= self.standard <= self.advanced:
            raise ValueError("generation prices must satisfy basic <= standard <= advanced")


@dataclass(frozen=True)
class ChatPricing:
    """Two-tier chat prices keyed on attachment presence."""
    simple: Decimal = Decimal("0.30")
    with_attachments: Decimal = Decimal("0.50")

    def __post_init__(self):
        if self.simple <= 0 or self.with_attachments <= 0:
            raise ValueError("chat prices must be > 0")


@dataclass(frozen=True)
class LimitsConfig:
    """Request validation bounds and account defaults."""
    prompt_min_length: int = 10
    prompt_max_length: int = 5000
    context_messages: int = 10
    starting_credits: Decimal = Decimal("100.00")
    title_length: int = 100

    def __post_init__(self):
        if self.prompt_min_length < 1:
            raise ValueError("prompt_min_length must be >= 1")
        if self.prompt_max_length < self.prompt_min_length:
            raise ValueError("prompt_max_length must be >= prompt_min_length")
        if self.context_messages < 1:
            raise ValueError("context_messages must be >= 1")
        if self.starting_credits < 0:
            raise ValueError("starting_credits must be >= 0")


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-plan request limits within a fixed window."""
    window_seconds: float = 60.0
    max_requests: Dict[Plan, int] = field(default_factory=lambda: {
        Plan.FREE: 20,
        Plan.BASIC: 60,
        Plan.PRO: 120,
        Plan.ENTERPRISE: 300,
    })

    def __post_init__(self):
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

    def limit_for(self, plan: Plan) -> int:
        return self.max_requests[plan]


@dataclass(frozen=True)
class GatewayConfig:
    """Complete gateway configuration."""
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    generation_pricing: GenerationPricing = field(default_factory=GenerationPricing)
    chat_pricing: ChatPricing = field(default_factory=ChatPricing)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    admin_emails: FrozenSet[str] = frozenset()

    def is_admin_email(self, email: str) -> bool:
        return email.strip().lower() in self.admin_emails


def load_gateway_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> GatewayConfig:
    """Load and validate gateway configuration.

    Values come from built-in defaults, then the YAML file (if given), then
    environment variables. Strict validation rejects unknown keys so that a
    typo never silently falls back to a default price.

    Args:
        path: Optional path to YAML configuration file
        env: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated GatewayConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    env = os.environ if env is None else env
    raw_config: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Gateway config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

        if not isinstance(raw_config, dict):
            raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'provider', 'pricing', 'limits', 'rate_limits', 'admin_emails'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    provider = ProviderConfig(**_section(raw_config, 'provider', {
        'base_url': str,
        'api_key': str,
        'timeout_seconds': float,
        'max_retries': int,
        'retry_base_delay': float,
        'model': str,
        'temperature': float,
        'max_tokens': int,
    }))
    provider = _apply_env_overrides(provider, env)

    pricing_data = raw_config.get('pricing') or {}
    if not isinstance(pricing_data, dict):
        raise ValueError("'pricing' must be a dictionary")
    unknown_pricing_keys = set(pricing_data.keys()) - {'generation', 'chat'}
    if unknown_pricing_keys:
        raise ValueError(f"Unknown pricing keys: {unknown_pricing_keys}")

    generation_pricing = GenerationPricing(**_section(pricing_data, 'generation', {
        'basic': _credits,
        'standard': _credits,
        'advanced': _credits,
        'standard_prompt_length': int,
        'standard_output_size': int,
        'advanced_prompt_length': int,
        'advanced_output_size': int,
        'advanced_file_count': int,
    }, path_prefix="pricing."))

    chat_pricing = ChatPricing(**_section(pricing_data, 'chat', {
        'simple': _credits,
        'with_attachments': _credits,
    }, path_prefix="pricing."))

    limits = LimitsConfig(**_section(raw_config, 'limits', {
        'prompt_min_length': int,
        'prompt_max_length': int,
        'context_messages': int,
        'starting_credits': _credits,
        'title_length': int,
    }))

    rate_limits = _parse_rate_limits(raw_config.get('rate_limits') or {})

    admin_emails = raw_config.get('admin_emails') or []
    if not isinstance(admin_emails, list):
        raise ValueError("'admin_emails' must be a list")
    if env.get('ADMIN_EMAILS'):
        admin_emails = env['ADMIN_EMAILS'].split(',')

    return GatewayConfig(
        provider=provider,
        generation_pricing=generation_pricing,
        chat_pricing=chat_pricing,
        limits=limits,
        rate_limits=rate_limits,
        admin_emails=frozenset(
            str(email).strip().lower() for email in admin_emails if str(email).strip()
        ),
    )


def _credits(value: Any) -> Decimal:
    """Convert a YAML number into a two-decimal credit amount."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"Invalid credit amount: {value!r}")
    return Decimal(str(value)).quantize(Decimal("0.01"))


def _section(
    data: Dict[str, Any],
    name: str,
    fields: Dict[str, Any],
    path_prefix: str = "",
) -> Dict[str, Any]:
    """Parse one flat configuration section.

    Args:
        data: Parent configuration mapping
        name: Section key
        fields: Allowed keys mapped to their converter
        path_prefix: Prefix for error messages

    Returns:
        Keyword arguments for the section's dataclass

    Raises:
        ValueError: If the section is not a mapping, has unknown keys, or a
            value cannot be converted
    """
    section = data.get(name) or {}
    path = f"{path_prefix}{name}"
    if not isinstance(section, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(section.keys()) - set(fields.keys())
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    parsed = {}
    for key, value in section.items():
        try:
            parsed[key] = fields[key](value)
        except (TypeError, ValueError, ArithmeticError):
            raise ValueError(f"Invalid value for '{key}' in {path}: {value!r}")
    return parsed


def _parse_rate_limits(data: Dict[str, Any]) -> RateLimitConfig:
    """Parse rate limit section keyed by plan name."""
    if not isinstance(data, dict):
        raise ValueError("'rate_limits' must be a dictionary")

    plan_names = {plan.value for plan in Plan}
    unknown_keys = set(data.keys()) - plan_names - {'window_seconds'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in rate_limits: {unknown_keys}")

    defaults = RateLimitConfig()
    max_requests = dict(defaults.max_requests)
    for plan in Plan:
        if plan.value in data:
            value = data[plan.value]
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"'rate_limits.{plan.value}' must be a positive integer")
            max_requests[plan] = value

    window = data.get('window_seconds', defaults.window_seconds)
    if not isinstance(window, (int, float)) or isinstance(window, bool):
        raise ValueError("'rate_limits.window_seconds' must be a number")

    return RateLimitConfig(window_seconds=float(window), max_requests=max_requests)


def _apply_env_overrides(provider: ProviderConfig, env: Mapping[str, str]) -> ProviderConfig:
    """Environment variables take precedence over the file for deployment values."""
    overrides: Dict[str, Any] = {}
    if env.get('EMERGENT_API_KEY'):
        overrides['api_key'] = env['EMERGENT_API_KEY']
    if env.get('EMERGENT_API_URL'):
        overrides['base_url'] = env['EMERGENT_API_URL']
    if env.get('EMERGENT_TIMEOUT_MS'):
        try:
            overrides['timeout_seconds'] = float(env['EMERGENT_TIMEOUT_MS']) / 1000
        except ValueError:
            raise ValueError(f"EMERGENT_TIMEOUT_MS must be a number: {env['EMERGENT_TIMEOUT_MS']!r}")
    return replace(provider, **overrides) if overrides else provider
