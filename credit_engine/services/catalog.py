"""
Tier Catalog - Static tier / model / cost lookup table.

The catalog is immutable. Changing tier definitions means building a new
TierCatalog and swapping it into the CatalogHolder in one assignment, so a
request never observes half of an old table and half of a new one.
"""

from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType

from pydantic import BaseModel, Field, ValidationError
from structlog import get_logger

from credit_engine.exceptions import CatalogValidationError, UnknownModelError, UnknownTierError
from credit_engine.models.api import Modality, ModelCategory, Tier
from credit_engine.models.domain import CreditPack, ModelSpec, TierConfig, TierUpgrade

logger = get_logger(__name__)


def _parse_tier(tier: Tier | str) -> Tier | None:
    """Coerce a tier value, None when it is not a known tier name."""
    if isinstance(tier, Tier):
        return tier
    try:
        return Tier(tier)
    except ValueError:
        return None


class TierCatalog:
    """
    Read-only tier catalog.

    Validated on construction - every allowed model must be registered and
    priced for its tier, so request-time lookups never hit a missing entry.
    """

    def __init__(
        self,
        tiers: Iterable[TierConfig],
        models: Iterable[ModelSpec],
        credit_packs: Iterable[CreditPack] = (),
    ) -> None:
        self._tiers: Mapping[Tier, TierConfig] = MappingProxyType({t.tier: t for t in tiers})
        self._models: Mapping[str, ModelSpec] = MappingProxyType({m.model_id: m for m in models})
        self._packs: Mapping[str, CreditPack] = MappingProxyType(
            {p.pack_id: p for p in credit_packs}
        )
        self._ranked: tuple[TierConfig, ...] = tuple(
            sorted(self._tiers.values(), key=lambda t: t.rank)
        )
        self._validate()

    def _validate(self) -> None:
        """FAIL FAST: reject catalogs with unmapped models or missing multipliers."""
        problems: list[str] = []

        if not self._tiers:
            problems.append("catalog defines no tiers")

        ranks = [t.rank for t in self._tiers.values()]
        if len(ranks) != len(set(ranks)):
            problems.append("tier ranks must be unique")

        for config in self._ranked:
            for model_id in sorted(config.allowed_models):
                spec = self._models.get(model_id)
                if spec is None:
                    problems.append(f"{config.tier.value}: model {model_id} has no category")
                    continue
                multiplier = config.model_cost_multiplier.get(spec.category)
                if multiplier is None:
                    problems.append(
                        f"{config.tier.value}: no multiplier for category {spec.category.value}"
                    )
                elif multiplier < 0:
                    problems.append(
                        f"{config.tier.value}: negative multiplier for {spec.category.value}"
                    )

        if problems:
            raise CatalogValidationError(problems)

    # ========================================================================
    # Core Lookups
    # ========================================================================

    def allows(self, tier: Tier | str, model_id: str) -> bool:
        """True iff the model is on the tier's allow-list. Unknown values fail closed."""
        parsed = _parse_tier(tier)
        if parsed is None:
            return False
        config = self._tiers.get(parsed)
        if config is None:
            return False
        return model_id in config.allowed_models and model_id in self._models

    def cost_of(self, tier: Tier | str, model_id: str, units: int) -> int:
        """
        Credit cost of `units` of a model on a tier.

        Raises:
            UnknownModelError: Model not registered
            UnknownTierError: Tier not defined
            ValueError: Negative units
        """
        spec = self.spec_for(model_id)
        config = self.tier_config(tier)
        multiplier = config.model_cost_multiplier.get(spec.category)
        if multiplier is None:
            # Tier has no price for this category; never guess zero
            raise UnknownModelError(model_id)
        return spec.base_cost(units) * multiplier

    def allotment_of(self, tier: Tier | str) -> int:
        """Monthly credit allotment of a tier."""
        return self.tier_config(tier).monthly_credit_allotment

    def personal_key_allowed(self, tier: Tier | str) -> bool:
        """Whether a tier may route requests through personal provider keys."""
        parsed = _parse_tier(tier)
        if parsed is None or parsed not in self._tiers:
            return False
        return self._tiers[parsed].personal_key_allowed

    # ========================================================================
    # Model Lookups
    # ========================================================================

    def spec_for(self, model_id: str) -> ModelSpec:
        """Get the registered spec of a model."""
        spec = self._models.get(model_id)
        if spec is None:
            raise UnknownModelError(model_id)
        return spec

    def category_of(self, model_id: str) -> ModelCategory:
        """Cost category of a model."""
        return self.spec_for(model_id).category

    def provider_of(self, model_id: str) -> str:
        """Provider that serves a model - the key a personal API key is stored under."""
        return self.spec_for(model_id).provider

    def tier_config(self, tier: Tier | str) -> TierConfig:
        """Get a tier definition."""
        parsed = _parse_tier(tier)
        if parsed is None or parsed not in self._tiers:
            raise UnknownTierError(str(tier.value if isinstance(tier, Tier) else tier))
        return self._tiers[parsed]

    @property
    def tiers(self) -> tuple[TierConfig, ...]:
        """All tiers, lowest rank first."""
        return self._ranked

    @property
    def models(self) -> tuple[ModelSpec, ...]:
        """All registered models."""
        return tuple(self._models.values())

    @property
    def credit_packs(self) -> tuple[CreditPack, ...]:
        """All purchasable credit packs."""
        return tuple(self._packs.values())

    def models_for(self, tier: Tier | str) -> tuple[str, ...]:
        """Allowed models of a tier, sorted."""
        return tuple(sorted(self.tier_config(tier).allowed_models))

    def lowest_tier_allowing(self, model_id: str) -> Tier | None:
        """Cheapest tier whose allow-list includes the model."""
        for config in self._ranked:
            if model_id in config.allowed_models:
                return config.tier
        return None

    def upgrade_path(self, tier: Tier | str) -> TierUpgrade | None:
        """Next tier up and what it unlocks, None at the top."""
        current = self.tier_config(tier)
        higher = [t for t in self._ranked if t.rank > current.rank]
        if not higher:
            return None
        nxt = higher[0]
        return TierUpgrade(
            current_tier=current.tier,
            next_tier=nxt.tier,
            additional_credits=nxt.monthly_credit_allotment - current.monthly_credit_allotment,
            unlocked_models=tuple(sorted(nxt.allowed_models - current.allowed_models)),
            unlocks_personal_keys=nxt.personal_key_allowed and not current.personal_key_allowed,
        )

    def credit_pack(self, pack_id: str) -> CreditPack | None:
        """Look up a credit pack."""
        return self._packs.get(pack_id)


class CatalogHolder:
    """
    Holds the active catalog.

    Readers take `current` once per request. `replace` swaps the whole table
    in a single reference assignment.
    """

    def __init__(self, catalog: TierCatalog) -> None:
        self._catalog = catalog

    @property
    def current(self) -> TierCatalog:
        """The active catalog."""
        return self._catalog

    def replace(self, catalog: TierCatalog) -> TierCatalog:
        """Swap in a new (already validated) catalog, returning the previous one."""
        previous = self._catalog
        self._catalog = catalog
        logger.info(
            "tier_catalog_replaced",
            tiers=len(catalog.tiers),
            models=len(catalog.models),
        )
        return previous


# ============================================================================
# Default Catalog
# ============================================================================

_CHAT_MODELS: tuple[tuple[str, str, ModelCategory], ...] = (
    # Base - low cost, efficient
    ("google/gemini-flash-2.5", "google", ModelCategory.BASE),
    ("deepseek/deepseek-chat", "deepseek", ModelCategory.BASE),
    ("nous-hermes-2-mixtral-8x7b-dpo", "nousresearch", ModelCategory.BASE),
    ("databricks/dbrx-instruct", "databricks", ModelCategory.BASE),
    ("qwen/qwen-2.5-72b-instruct", "qwen", ModelCategory.BASE),
    ("meta-llama/llama-3.2-90b-instruct", "meta", ModelCategory.BASE),
    # Advanced - mid-range cost
    ("mistralai/mistral-large-2411", "mistral", ModelCategory.ADVANCED),
    ("x-ai/grok-2-1212", "xai", ModelCategory.ADVANCED),
    ("cohere/command-r-plus-08-2024", "cohere", ModelCategory.ADVANCED),
    ("anthropic/claude-4-sonnet", "anthropic", ModelCategory.ADVANCED),
    ("google/gemini-pro-2.5", "google", ModelCategory.ADVANCED),
    # Premium - high cost, best performance
    ("openai/gpt-4o", "openai", ModelCategory.PREMIUM),
    ("openai/gpt-4.1", "openai", ModelCategory.PREMIUM),
    ("anthropic/claude-4-opus", "anthropic", ModelCategory.PREMIUM),
    ("meta-llama/llama-3.1-405b-instruct", "meta", ModelCategory.PREMIUM),
    ("perplexity/llama-3.1-sonar-huge-128k-online", "perplexity", ModelCategory.PREMIUM),
)

# Image models bill per generated image, video models per generated clip
_MEDIA_MODELS: tuple[tuple[str, str, Modality, ModelCategory, int], ...] = (
    ("image/stability-sdxl", "stability", Modality.IMAGE, ModelCategory.ADVANCED, 10),
    ("image/leonardo", "leonardo", Modality.IMAGE, ModelCategory.ADVANCED, 13),
    ("image/dall-e-3", "dalle", Modality.IMAGE, ModelCategory.ADVANCED, 16),
    ("image/midjourney", "midjourney", Modality.IMAGE, ModelCategory.ADVANCED, 25),
    ("video/invideo-ai", "invideo-ai", Modality.VIDEO, ModelCategory.PREMIUM, 31),
    ("video/genmo", "genmo", Modality.VIDEO, ModelCategory.PREMIUM, 38),
    ("video/runway-gen4-turbo", "runway-gen4-turbo", Modality.VIDEO, ModelCategory.PREMIUM, 38),
    ("video/pika-labs", "pika-labs", Modality.VIDEO, ModelCategory.PREMIUM, 44),
    ("video/luma-dream-machine", "luma-dream-machine", Modality.VIDEO, ModelCategory.PREMIUM, 50),
    ("video/runway-gen4", "runway-gen4", Modality.VIDEO, ModelCategory.PREMIUM, 60),
    ("video/synthesia", "synthesia", Modality.VIDEO, ModelCategory.PREMIUM, 75),
)

DEFAULT_MULTIPLIERS: Mapping[ModelCategory, int] = MappingProxyType(
    {
        ModelCategory.BASE: 1,
        ModelCategory.ADVANCED: 3,
        ModelCategory.PREMIUM: 8,
    }
)


def _default_models() -> list[ModelSpec]:
    models = [
        ModelSpec(model_id=model_id, provider=provider, category=category)
        for model_id, provider, category in _CHAT_MODELS
    ]
    models.extend(
        ModelSpec(
            model_id=model_id,
            provider=provider,
            category=category,
            modality=modality,
            units_per_block=1,
            credits_per_block=credits,
        )
        for model_id, provider, modality, category, credits in _MEDIA_MODELS
    )
    return models


def build_default_catalog() -> TierCatalog:
    """Catalog matching the product's published tiers."""
    models = _default_models()

    def in_categories(*categories: ModelCategory) -> frozenset[str]:
        return frozenset(m.model_id for m in models if m.category in categories)

    base = in_categories(ModelCategory.BASE)
    advanced = in_categories(ModelCategory.BASE, ModelCategory.ADVANCED)
    everything = frozenset(m.model_id for m in models)

    tiers = [
        TierConfig(
            tier=Tier.ENTRY,
            rank=1,
            allowed_models=base,
            monthly_credit_allotment=250,
            model_cost_multiplier=DEFAULT_MULTIPLIERS,
            features=("250 AI credits per month", "Basic AI models"),
        ),
        TierConfig(
            tier=Tier.PROFESSIONAL,
            rank=2,
            allowed_models=advanced,
            monthly_credit_allotment=2000,
            model_cost_multiplier=DEFAULT_MULTIPLIERS,
            features=("2,000 AI credits per month", "Basic + Advanced AI models"),
        ),
        TierConfig(
            tier=Tier.BUSINESS,
            rank=3,
            allowed_models=everything,
            monthly_credit_allotment=8000,
            model_cost_multiplier=DEFAULT_MULTIPLIERS,
            features=("8,000 AI credits per month", "All AI models available"),
        ),
        TierConfig(
            tier=Tier.PREMIUM,
            rank=4,
            allowed_models=everything,
            monthly_credit_allotment=20000,
            model_cost_multiplier=DEFAULT_MULTIPLIERS,
            personal_key_allowed=True,
            features=("20,000 AI credits per month", "All AI models + custom API keys"),
        ),
    ]

    packs = [
        CreditPack(pack_id="basic", name="500 Credits", credits=500, price_minor=4999),
        CreditPack(pack_id="pro", name="1,000 Credits", credits=1000, price_minor=8999),
        CreditPack(pack_id="enterprise", name="2,500 Credits", credits=2500, price_minor=19999),
    ]

    return TierCatalog(tiers=tiers, models=models, credit_packs=packs)


# ============================================================================
# Catalog File Loading
# ============================================================================


class ModelDocument(BaseModel):
    """Model entry in a catalog file."""

    model_id: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    category: ModelCategory
    modality: Modality = Modality.CHAT
    units_per_block: int = Field(1000, gt=0)
    credits_per_block: int = Field(1, ge=0)


class TierDocument(BaseModel):
    """Tier entry in a catalog file."""

    tier: Tier
    rank: int
    monthly_credit_allotment: int = Field(..., ge=0)
    allowed_models: list[str]
    multipliers: dict[ModelCategory, int]
    personal_key_allowed: bool = False
    features: list[str] = Field(default_factory=list)


class CreditPackDocument(BaseModel):
    """Credit pack entry in a catalog file."""

    pack_id: str = Field(..., min_length=1)
    name: str
    credits: int = Field(..., gt=0)
    price_minor: int = Field(..., ge=0)


class CatalogDocument(BaseModel):
    """Top-level catalog file."""

    models: list[ModelDocument]
    tiers: list[TierDocument]
    credit_packs: list[CreditPackDocument] = Field(default_factory=list)

    def to_catalog(self) -> TierCatalog:
        """Build (and validate) the catalog this document describes."""
        return TierCatalog(
            tiers=[
                TierConfig(
                    tier=t.tier,
                    rank=t.rank,
                    allowed_models=frozenset(t.allowed_models),
                    monthly_credit_allotment=t.monthly_credit_allotment,
                    model_cost_multiplier=t.multipliers,
                    personal_key_allowed=t.personal_key_allowed,
                    features=tuple(t.features),
                )
                for t in self.tiers
            ],
            models=[ModelSpec(**m.model_dump()) for m in self.models],
            credit_packs=[CreditPack(**p.model_dump()) for p in self.credit_packs],
        )


def load_catalog(path: str | Path) -> TierCatalog:
    """
    Load a catalog from a JSON file.

    Raises:
        CatalogValidationError: File unreadable, malformed, or inconsistent
    """
    catalog_path = Path(path)
    try:
        raw = catalog_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CatalogValidationError([f"cannot read {catalog_path}: {exc}"]) from exc

    try:
        document = CatalogDocument.model_validate_json(raw)
    except ValidationError as exc:
        raise CatalogValidationError(
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        ) from exc

    catalog = document.to_catalog()
    logger.info(
        "tier_catalog_loaded",
        path=str(catalog_path),
        tiers=len(catalog.tiers),
        models=len(catalog.models),
    )
    return catalog


def load_configured_catalog(path: str | None) -> TierCatalog:
    """Catalog from TIER_CATALOG_PATH, or the built-in catalog when unset."""
    if path:
        return load_catalog(path)
    return build_default_catalog()
