"""
Per-model conversation defaults: max_tokens, context_length, temperature.

Applied when a conversation is created or switches model. Entries under
`models:` in config.yaml override or extend the built-in table:

    models:
      llama3.2:3b:
        max_tokens: 2048
        context_length: 8192
        temperature: 0.6

Lookup is by exact id first, then by longest matching prefix, so
"gpt-4o-2024-08-06" picks up the "gpt-4o" entry.
"""

from __future__ import annotations

from dataclasses import dataclass

BUILTIN_MODEL_CONFIGS: dict[str, dict] = {
    "gpt-4": {"max_tokens": 4096, "context_length": 8192, "temperature": 0.7},
    "gpt-4o": {"max_tokens": 16384, "context_length": 128000, "temperature": 0.7},
    "gpt-4o-mini": {"max_tokens": 16384, "context_length": 128000, "temperature": 0.7},
    "gpt-4.1": {"max_tokens": 32768, "context_length": 1047576, "temperature": 0.7},
    "o3-mini": {"max_tokens": 65536, "context_length": 200000, "temperature": 1.0},
    "deepseek-chat": {"max_tokens": 8192, "context_length": 65536, "temperature": 0.6},
    "deepseek-reasoner": {"max_tokens": 8192, "context_length": 65536, "temperature": 0.6},
    "claude-3-5-sonnet": {"max_tokens": 8192, "context_length": 200000, "temperature": 0.7},
    "qwen2.5": {"max_tokens": 8192, "context_length": 32768, "temperature": 0.7},
    "llama3.2": {"max_tokens": 2048, "context_length": 8192, "temperature": 0.6},
}


@dataclass
class ModelConfig:
    max_tokens: int
    context_length: int
    temperature: float


def _lookup(table: dict[str, dict], model_id: str) -> dict | None:
    if model_id in table:
        return table[model_id]
    matches = [key for key in table if model_id.startswith(key)]
    if not matches:
        return None
    return table[max(matches, key=len)]


def get_model_config(model_id: str, overrides: dict[str, dict] | None = None) -> ModelConfig | None:
    """Defaults for `model_id`, or None when the model is unknown."""
    if not model_id:
        return None
    table = {**BUILTIN_MODEL_CONFIGS, **(overrides or {})}
    entry = _lookup(table, model_id)
    if entry is None:
        return None
    base = _lookup(BUILTIN_MODEL_CONFIGS, model_id) or {}
    merged = {**base, **entry}
    try:
        return ModelConfig(
            max_tokens=int(merged["max_tokens"]),
            context_length=int(merged["context_length"]),
            temperature=float(merged.get("temperature", 0.7)),
        )
    except (KeyError, TypeError, ValueError):
        return None
