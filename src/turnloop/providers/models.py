"""Per-model request capabilities."""

from dataclasses import dataclass

DEFAULT_REASONING_LEVELS = ("low", "medium", "high")


@dataclass(frozen=True, slots=True)
class ModelCapabilities:
    model_id: str
    supports_reasoning_effort: bool = False
    reasoning_effort_levels: tuple[str, ...] = DEFAULT_REASONING_LEVELS
    max_output_tokens: int | None = None


_REASONING_PREFIXES: dict[str, tuple[str, ...]] = {
    "o1": DEFAULT_REASONING_LEVELS,
    "o3": DEFAULT_REASONING_LEVELS,
    "o4": DEFAULT_REASONING_LEVELS,
    "gpt-5": ("minimal", "low", "medium", "high"),
}


def model_capabilities(model_id: str, default_max_output_tokens: int = 0) -> ModelCapabilities:
    name = model_id.strip().lower()
    max_tokens = default_max_output_tokens or None
    for prefix, levels in _REASONING_PREFIXES.items():
        if name.startswith(prefix):
            return ModelCapabilities(
                model_id=model_id,
                supports_reasoning_effort=True,
                reasoning_effort_levels=levels,
                max_output_tokens=max_tokens,
            )
    return ModelCapabilities(model_id=model_id, max_output_tokens=max_tokens)
