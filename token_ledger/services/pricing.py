"""
Model pricing catalog.

Maps model ids to the flat token cost of one request and the model's quality
tier. Lookups never fail: unknown ids fall back to a default entry so billing
can always proceed with an estimate.
"""

import math
from collections.abc import Mapping

from token_ledger.models.api import ModelTier
from token_ledger.models.domain import CostEstimate, PricingEntry

TOKENS_PER_USD = 10_000
DEFAULT_TOKENS_PER_REQUEST = 1000
DEFAULT_TIER = ModelTier.MID


def _entry(
    model_id: str,
    name: str,
    provider: str,
    tokens: int,
    tier: ModelTier,
    paid_only: bool = False,
) -> tuple[str, PricingEntry]:
    return model_id, PricingEntry(
        model_id=model_id,
        name=name,
        provider=provider,
        tokens_per_request=tokens,
        tier=tier,
        paid_only=paid_only,
    )


MODEL_PRICING: dict[str, PricingEntry] = dict(
    [
        # Free tier chat models
        _entry("grok-4-fast", "Grok 4 Fast", "X.AI", 800, ModelTier.FREE),
        _entry("gemini-flash-lite-free", "Gemini 2.5 Flash Lite", "Google", 800, ModelTier.FREE),
        _entry("deepseek-v3.1-free", "DeepSeek V3.1 Free", "DeepSeek", 800, ModelTier.FREE),
        _entry("llama-4-maverick-free", "Llama 4 Maverick Free", "Meta", 1000, ModelTier.FREE),
        _entry("nemotron-nano-free", "Nemotron Nano 9B V2", "NVIDIA", 700, ModelTier.FREE),
        _entry("qwen-vl-30b-free", "Qwen3 VL 30B Thinking", "Qwen", 900, ModelTier.FREE),
        _entry("claude-3-haiku", "Claude 3 Haiku", "Anthropic", 1200, ModelTier.FREE),
        _entry("perplexity-sonar", "Perplexity Sonar", "Perplexity", 2000, ModelTier.FREE),
        _entry("kimi-k2-free", "Kimi K2 Free", "Moonshot", 1000, ModelTier.FREE),
        _entry("codex-mini", "Codex Mini", "OpenAI", 600, ModelTier.FREE),
        _entry("lfm2-8b", "LiquidAI LFM2-8B", "LiquidAI", 500, ModelTier.FREE),
        _entry("granite-4.0", "Granite 4.0 Micro", "IBM", 600, ModelTier.FREE),
        _entry("ernie-4.5", "ERNIE 4.5 21B Thinking", "Baidu", 850, ModelTier.FREE),
        # Budget
        _entry("kimi-k2", "Kimi K2", "Moonshot", 5000, ModelTier.BUDGET),
        _entry("kimi-k2-0905", "Kimi K2 0905", "MoonshotAI", 7000, ModelTier.BUDGET),
        _entry("deepseek-v3.2", "DeepSeek V3.2", "DeepSeek", 6000, ModelTier.BUDGET),
        # Mid
        _entry("gemini-flash-image", "Gemini 2.5 Flash Image", "Google", 8000, ModelTier.MID),
        _entry("qwen-vl-32b", "Qwen3 VL 32B Instruct", "Qwen", 10000, ModelTier.MID),
        _entry("gpt-5-chat", "GPT-5 Chat", "OpenAI", 16000, ModelTier.MID),
        _entry("nemotron-super", "Nemotron Super 49B", "NVIDIA", 14000, ModelTier.MID),
        _entry("llama-4-maverick", "Llama 4 Maverick", "Meta", 15000, ModelTier.MID),
        _entry("glm-4.6", "GLM 4.6", "Z.AI", 16500, ModelTier.MID),
        _entry("claude-haiku-4.5", "Claude Haiku 4.5", "Anthropic", 8000, ModelTier.MID),
        _entry("perplexity-sonar-pro", "Perplexity Sonar Pro", "Perplexity", 18000, ModelTier.MID),
        _entry("stable-diffusion-xl", "Stable Diffusion XL", "Stability AI", 20000, ModelTier.MID),
        _entry("eleven-labs", "ElevenLabs", "ElevenLabs", 12000, ModelTier.MID),
        # Premium
        _entry("gpt-5-codex", "GPT-5 Codex", "OpenAI", 24000, ModelTier.PREMIUM),
        _entry("claude-sonnet", "Claude Sonnet 4.5", "Anthropic", 120000, ModelTier.PREMIUM),
        _entry(
            "perplexity-sonar-reasoning",
            "Perplexity Sonar Reasoning Pro",
            "Perplexity",
            32000,
            ModelTier.PREMIUM,
        ),
        _entry(
            "perplexity-sonar-deep",
            "Perplexity Sonar Deep Research",
            "Perplexity",
            60000,
            ModelTier.PREMIUM,
        ),
        _entry("dall-e-3", "DALL-E 3", "OpenAI", 32000, ModelTier.PREMIUM),
        _entry("firefly", "Firefly", "Adobe", 28000, ModelTier.PREMIUM),
        _entry("veo3", "Veo 3 Fast", "Google", 150000, ModelTier.PREMIUM),
        # Ultra premium
        _entry("claude-opus-4", "Claude Opus 4", "Anthropic", 200000, ModelTier.ULTRA_PREMIUM),
        _entry("claude-opus-4.1", "Claude Opus 4.1", "Anthropic", 220000, ModelTier.ULTRA_PREMIUM),
        _entry("sora", "Sora 2", "OpenAI", 600000, ModelTier.ULTRA_PREMIUM, paid_only=True),
    ]
)


class PricingTable:
    """
    Pure model id -> PricingEntry lookup.

    Holds no state beyond the catalog it was built with; tests may pass their
    own entries.
    """

    def __init__(
        self,
        entries: Mapping[str, PricingEntry] | None = None,
        default_tokens: int = DEFAULT_TOKENS_PER_REQUEST,
    ) -> None:
        if default_tokens <= 0:
            raise ValueError(f"Default tokens must be positive: {default_tokens}")
        self._entries = dict(MODEL_PRICING if entries is None else entries)
        self._default_tokens = default_tokens

    def cost(self, model_id: str) -> PricingEntry:
        """Price of one request; unknown ids get the default mid-tier entry."""
        entry = self._entries.get(model_id)
        if entry is not None:
            return entry
        return PricingEntry(
            model_id=model_id or "unknown",
            name=model_id or "unknown",
            provider="unknown",
            tokens_per_request=self._default_tokens,
            tier=DEFAULT_TIER,
        )

    def estimate(self, model_id: str) -> CostEstimate:
        entry = self.cost(model_id)
        return CostEstimate(model_id=model_id, tokens=entry.tokens_per_request, tier=entry.tier)

    def is_known(self, model_id: str) -> bool:
        return model_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


_default_table = PricingTable()


def get_model_pricing(model_id: str) -> PricingEntry:
    """Look up a model in the built-in catalog."""
    return _default_table.cost(model_id)


def is_model_free(model_id: str) -> bool:
    """True only for catalogued free-tier models."""
    return _default_table.is_known(model_id) and get_model_pricing(model_id).tier == ModelTier.FREE


def is_model_paid_only(model_id: str) -> bool:
    return _default_table.is_known(model_id) and get_model_pricing(model_id).paid_only


def usd_to_tokens(usd: float) -> int:
    """Convert a USD amount to tokens, rounding up."""
    return math.ceil(usd * TOKENS_PER_USD)


def tokens_to_usd(tokens: int) -> float:
    return tokens / TOKENS_PER_USD


def format_token_display(tokens: int) -> str:
    """Compact token count for display: 950, 1.5K, 2.0M."""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}K"
    return str(tokens)
