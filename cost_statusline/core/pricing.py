"""
Pricing calculations and rate management.

Handles cost computations for Claude models. All prices are USD per
million tokens.

Pricing table resolution:
1. ``pricing.json`` / ``pricing.yaml`` in the current directory
2. File named by ``CLAUDE_PRICING_PATH`` (or the configured pricing path)
3. Embedded default table
Then, when all four ``CLAUDE_PRICE_*`` variables parse, they override the
unit prices of every model together.
"""

import logging
import os
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

_PER_MILLION = Decimal("1000000")

PRICE_ENV_VARS = (
    "CLAUDE_PRICE_INPUT",
    "CLAUDE_PRICE_OUTPUT",
    "CLAUDE_PRICE_CACHE_CREATE",
    "CLAUDE_PRICE_CACHE_READ",
)
PRICING_PATH_ENV = "CLAUDE_PRICING_PATH"
PRICING_FILENAMES = ("pricing.json", "pricing.yaml", "pricing.yml")
DEFAULT_MODEL = "sonnet-4"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model (USD per million tokens)."""
    input_per_mtok: Decimal
    output_per_mtok: Decimal
    cache_create_per_mtok: Decimal
    cache_read_per_mtok: Decimal

    def scaled(self, multipliers: "TierMultipliers") -> "ModelPricing":
        return ModelPricing(
            input_per_mtok=self.input_per_mtok * multipliers.input,
            output_per_mtok=self.output_per_mtok * multipliers.output,
            cache_create_per_mtok=self.cache_create_per_mtok * multipliers.cache_create,
            cache_read_per_mtok=self.cache_read_per_mtok * multipliers.cache_read,
        )


@dataclass(frozen=True)
class TierMultipliers:
    input: Decimal = Decimal("1")
    output: Decimal = Decimal("1")
    cache_create: Decimal = Decimal("1")
    cache_read: Decimal = Decimal("1")


@dataclass(frozen=True)
class PricingTier:
    """Long-context surcharge applied above a total input token threshold."""
    name: str
    threshold: int
    applies_to: Tuple[str, ...]
    multipliers: TierMultipliers

    def applies(self, model: str, total_input_tokens: int) -> bool:
        m = model.lower()
        return total_input_tokens > self.threshold and any(
            pattern.lower() in m for pattern in self.applies_to
        )


@dataclass(frozen=True)
class PricingTable:
    """Read-only pricing table for supported models."""
    prices: Dict[str, ModelPricing]
    web_search_per_request: Decimal = Decimal("0.01")
    tiers: Tuple[PricingTier, ...] = ()
    override: Optional[ModelPricing] = None
    default_model: str = DEFAULT_MODEL
    source: str = "embedded"

    def get_pricing(self, model: Optional[str]) -> ModelPricing:
        """Get pricing for a model, degrading to the nearest known row.

        Never raises: an imprecise estimate is preferred to no estimate.

        Args:
            model: Model identifier (may be empty or unknown)

        Returns:
            ModelPricing for the model, a family match, or the default row
        """
        if self.override is not None:
            return self.override

        m = (model or "").lower()
        if m in self.prices:
            return self.prices[m]

        # Longest contained key wins so "sonnet-4-5" beats "sonnet-4"
        matches = [key for key in self.prices if key and key in m]
        if matches:
            return self.prices[max(matches, key=len)]

        for family in ("opus", "sonnet", "haiku"):
            if family in m and family in FAMILY_DEFAULTS:
                return FAMILY_DEFAULTS[family]

        if m:
            logger.debug(f"No pricing for model {model!r}, using {self.default_model}")
        return self.prices.get(self.default_model, FAMILY_DEFAULTS["sonnet"])

    def is_known(self, model: Optional[str]) -> bool:
        m = (model or "").lower()
        return m in self.prices or any(key and key in m for key in self.prices)


def _row(inp: str, out: str, cache_create: str, cache_read: str) -> ModelPricing:
    return ModelPricing(
        input_per_mtok=Decimal(inp),
        output_per_mtok=Decimal(out),
        cache_create_per_mtok=Decimal(cache_create),
        cache_read_per_mtok=Decimal(cache_read),
    )


FAMILY_DEFAULTS: Dict[str, ModelPricing] = {
    "opus": _row("15.00", "75.00", "18.75", "1.50"),
    "sonnet": _row("3.00", "15.00", "3.75", "0.30"),
    "haiku": _row("0.80", "4.00", "1.00", "0.08"),
}

# Embedded default table; keys are matched as substrings of the model id
DEFAULT_PRICES: Dict[str, ModelPricing] = {
    "opus-4-5": _row("5.00", "25.00", "6.25", "0.50"),
    "opus-4-1": _row("15.00", "75.00", "18.75", "1.50"),
    "opus-4": _row("15.00", "75.00", "18.75", "1.50"),
    "sonnet-4-5": _row("3.00", "15.00", "3.75", "0.30"),
    "sonnet-4": _row("3.00", "15.00", "3.75", "0.30"),
    "4-sonnet": _row("3.00", "15.00", "3.75", "0.30"),
    "3-7-sonnet": _row("3.00", "15.00", "3.75", "0.30"),
    "3-5-sonnet": _row("3.00", "15.00", "3.75", "0.30"),
    "haiku-4-5": _row("1.00", "5.00", "1.25", "0.10"),
    "3-5-haiku": _row("0.80", "4.00", "1.00", "0.08"),
    "3-haiku": _row("0.25", "1.25", "0.30", "0.03"),
}

DEFAULT_TIERS: Tuple[PricingTier, ...] = (
    PricingTier(
        name="long-context",
        threshold=200_000,
        applies_to=("sonnet-4",),
        multipliers=TierMultipliers(
            input=Decimal("2"),
            output=Decimal("1.5"),
            cache_create=Decimal("2"),
            cache_read=Decimal("2"),
        ),
    ),
)

PRICING_TABLE = PricingTable(prices=DEFAULT_PRICES, tiers=DEFAULT_TIERS)


def calculate_cost(
    model: Optional[str],
    usage: TokenUsage,
    table: Optional[PricingTable] = None,
) -> float:
    """Calculate the USD cost of one usage record.

    cost = input * p_in + output * p_out + cache_create * p_cc + cache_read * p_cr,
    with long-context tier multipliers applied first when they match.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table (defaults to the embedded table)

    Returns:
        Cost in USD, unrounded
    """
    table = table or PRICING_TABLE
    pricing = table.get_pricing(model)
    if table.override is None:
        for tier in table.tiers:
            if tier.applies(model or "", usage.total_input_tokens):
                pricing = pricing.scaled(tier.multipliers)
                break

    total = (
        Decimal(usage.input_tokens) * pricing.input_per_mtok
        + Decimal(usage.output_tokens) * pricing.output_per_mtok
        + Decimal(usage.cache_creation_tokens) * pricing.cache_create_per_mtok
        + Decimal(usage.cache_read_tokens) * pricing.cache_read_per_mtok
    ) / _PER_MILLION
    return float(total)


def web_search_cost(requests: int, table: Optional[PricingTable] = None) -> float:
    """Flat per-request charge for server-side web searches."""
    if requests <= 0:
        return 0.0
    table = table or PRICING_TABLE
    return float(Decimal(requests) * table.web_search_per_request)


# ── Override outcome ─────────────────────────────────────────────────────────


class OverrideStatus(Enum):
    """Outcome of reading the all-or-nothing environment price override."""
    APPLIED = "applied"
    USE_DEFAULT = "use_default"


@dataclass(frozen=True)
class PriceOverride:
    status: OverrideStatus
    pricing: Optional[ModelPricing] = None
    reason: str = ""


def read_price_override(env: Optional[Mapping[str, str]] = None) -> PriceOverride:
    """Read the four price environment variables.

    All four must be present and numeric; anything less yields USE_DEFAULT
    and the table's own prices stay in effect.
    """
    env = os.environ if env is None else env
    raw = [env.get(name) for name in PRICE_ENV_VARS]
    if all(value is None or not value.strip() for value in raw):
        return PriceOverride(OverrideStatus.USE_DEFAULT, reason="not set")

    missing = [name for name, value in zip(PRICE_ENV_VARS, raw) if value is None or not value.strip()]
    if missing:
        logger.debug(f"Ignoring partial price override, missing {missing}")
        return PriceOverride(OverrideStatus.USE_DEFAULT, reason=f"missing {', '.join(missing)}")

    try:
        values = [Decimal(value.strip()) for value in raw]
    except InvalidOperation:
        return PriceOverride(OverrideStatus.USE_DEFAULT, reason="unparsable value")

    if any(not v.is_finite() or v < 0 for v in values):
        return PriceOverride(OverrideStatus.USE_DEFAULT, reason="negative or non-finite value")

    return PriceOverride(OverrideStatus.APPLIED, pricing=ModelPricing(*values))


# ── Pricing files ────────────────────────────────────────────────────────────


def _decimal(value, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not result.is_finite() or result < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return result


def parse_pricing_document(raw: dict, source: str = "file") -> PricingTable:
    """Build a PricingTable from a parsed pricing document.

    Expected shape::

        models:
          claude-sonnet-4: {input: 3, output: 15, cache_create: 3.75, cache_read: 0.3}
        additional_costs: {web_search_per_request: 0.01}
        tiered_pricing:
          enabled: true
          tiers:
            - {name: long-context, threshold: 200000, applies_to: [sonnet-4],
               multipliers: {input: 2, output: 1.5, cache_create: 2, cache_read: 2}}

    Raises:
        ValueError: If the document is malformed
    """
    if not isinstance(raw, dict):
        raise ValueError("Pricing document must be a mapping")

    models = raw.get("models")
    if not isinstance(models, dict) or not models:
        raise ValueError("Pricing document needs a non-empty 'models' mapping")

    prices: Dict[str, ModelPricing] = {}
    for model_id, row in models.items():
        if not isinstance(row, dict):
            raise ValueError(f"Model '{model_id}' must be a mapping")
        prices[str(model_id).lower()] = ModelPricing(
            input_per_mtok=_decimal(row.get("input"), f"models.{model_id}.input"),
            output_per_mtok=_decimal(row.get("output"), f"models.{model_id}.output"),
            cache_create_per_mtok=_decimal(row.get("cache_create"), f"models.{model_id}.cache_create"),
            cache_read_per_mtok=_decimal(row.get("cache_read"), f"models.{model_id}.cache_read"),
        )

    extra = raw.get("additional_costs") or {}
    if not isinstance(extra, dict):
        raise ValueError("'additional_costs' must be a mapping")
    web_search = _decimal(extra.get("web_search_per_request", "0.01"), "additional_costs.web_search_per_request")

    tiers = []
    tiered = raw.get("tiered_pricing") or {}
    if not isinstance(tiered, dict):
        raise ValueError("'tiered_pricing' must be a mapping")
    if tiered.get("enabled"):
        for i, tier in enumerate(tiered.get("tiers") or []):
            if not isinstance(tier, dict):
                raise ValueError(f"tiered_pricing.tiers[{i}] must be a mapping")
            mult = tier.get("multipliers") or {}
            applies_to = tier.get("applies_to") or []
            if not isinstance(applies_to, list):
                raise ValueError(f"tiered_pricing.tiers[{i}].applies_to must be a list")
            tiers.append(PricingTier(
                name=str(tier.get("name", f"tier-{i}")),
                threshold=int(_decimal(tier.get("threshold"), f"tiered_pricing.tiers[{i}].threshold")),
                applies_to=tuple(str(p) for p in applies_to),
                multipliers=TierMultipliers(
                    input=_decimal(mult.get("input", 1), f"tiers[{i}].multipliers.input"),
                    output=_decimal(mult.get("output", 1), f"tiers[{i}].multipliers.output"),
                    cache_create=_decimal(mult.get("cache_create", 1), f"tiers[{i}].multipliers.cache_create"),
                    cache_read=_decimal(mult.get("cache_read", 1), f"tiers[{i}].multipliers.cache_read"),
                ),
            ))

    default_model = str(raw.get("default_model", DEFAULT_MODEL)).lower()
    return PricingTable(
        prices=prices,
        web_search_per_request=web_search,
        tiers=tuple(tiers),
        default_model=default_model,
        source=source,
    )


def load_pricing_file(path: Path) -> PricingTable:
    """Load a JSON or YAML pricing file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is not a valid pricing document
    """
    if not path.is_file():
        raise FileNotFoundError(f"Pricing file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid pricing file {path}: {e}")
    return parse_pricing_document(raw, source=str(path))


def resolve_pricing_table(
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    configured_path: Optional[Path] = None,
) -> PricingTable:
    """Resolve the pricing table in precedence order, then apply overrides.

    A pricing file that fails to load is logged and skipped; the embedded
    table is always the final fallback.
    """
    env = os.environ if env is None else env
    cwd = cwd or Path.cwd()

    candidates = [cwd / name for name in PRICING_FILENAMES]
    env_path = env.get(PRICING_PATH_ENV, "").strip()
    if env_path:
        candidates.append(Path(env_path).expanduser())
    if configured_path is not None:
        candidates.append(configured_path)

    table = PRICING_TABLE
    for candidate in candidates:
        if not candidate.is_file():
            continue
        try:
            table = load_pricing_file(candidate)
            break
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring pricing file {candidate}: {e}")

    override = read_price_override(env)
    if override.status is OverrideStatus.APPLIED:
        table = replace(table, override=override.pricing, source=f"{table.source}+env")
    return table
