from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final, Literal

FeatureSource = Literal["config", "persisted", "override"]

# Feature name -> (environment variable, default).
FEATURE_DEFAULTS: Final[dict[str, tuple[str, bool]]] = {
    "multi_index_federation": ("ENABLE_MULTI_INDEX_FEDERATION", False),
    "intent_routing": ("ENABLE_INTENT_ROUTING", True),
    "response_storage": ("ENABLE_RESPONSE_STORAGE", False),
    "adaptive_retrieval": ("ENABLE_ADAPTIVE_RETRIEVAL", False),
    "web_reranking": ("ENABLE_WEB_RERANKING", False),
    "critic": ("ENABLE_CRITIC", True),
    "web_search": ("ENABLE_WEB_SEARCH", True),
    "knowledge_agent": ("ENABLE_KNOWLEDGE_AGENT", True),
    "llm_planner": ("ENABLE_LLM_PLANNER", True),
}
FEATURE_NAMES: Final[frozenset[str]] = frozenset(FEATURE_DEFAULTS)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def parse_bool(value: str, *, name: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got {value!r}")


def read_config_features() -> dict[str, bool]:
    """Read the process-level feature defaults from the environment."""

    features: dict[str, bool] = {}
    for feature, (env_name, default) in FEATURE_DEFAULTS.items():
        raw = os.getenv(env_name, "").strip()
        features[feature] = parse_bool(raw, name=env_name) if raw else default
    return features


def sanitize_feature_overrides(raw: Mapping[str, object] | None) -> dict[str, bool]:
    """Keep only known feature names with boolean-like values.

    Unknown keys and values that are not booleans (or "true"/"false" strings)
    are dropped silently; overrides come from untrusted request bodies.
    """

    if not raw:
        return {}

    sanitized: dict[str, bool] = {}
    for key, value in raw.items():
        if key not in FEATURE_NAMES:
            continue
        if isinstance(value, bool):
            sanitized[key] = value
        elif isinstance(value, str) and value.strip().lower() in ("true", "false"):
            sanitized[key] = value.strip().lower() == "true"
    return sanitized


@dataclass(frozen=True)
class FeatureResolution:
    resolved: dict[str, bool]
    sources: dict[str, FeatureSource]
    gates: dict[str, bool]

    def is_enabled(self, feature: str) -> bool:
        return self.resolved.get(feature, False)

    def as_payload(self) -> dict[str, object]:
        return {
            "resolved": dict(self.resolved),
            "sources": dict(self.sources),
            "gates": dict(self.gates),
        }


def resolve_features(
    config: Mapping[str, bool],
    *,
    persisted: Mapping[str, object] | None = None,
    overrides: Mapping[str, object] | None = None,
    gates: Mapping[str, bool] | None = None,
) -> FeatureResolution:
    """Merge config < persisted < override into one flat flag map.

    A feature whose gate is closed (its backing service is not configured)
    resolves to False whatever the tiers say.
    """

    persisted_values = sanitize_feature_overrides(persisted)
    override_values = sanitize_feature_overrides(overrides)
    gate_values = {feature: bool((gates or {}).get(feature, True)) for feature in FEATURE_NAMES}

    resolved: dict[str, bool] = {}
    sources: dict[str, FeatureSource] = {}
    for feature in sorted(FEATURE_NAMES):
        value = bool(config.get(feature, FEATURE_DEFAULTS[feature][1]))
        source: FeatureSource = "config"
        if feature in persisted_values:
            value = persisted_values[feature]
            source = "persisted"
        if feature in override_values:
            value = override_values[feature]
            source = "override"
        resolved[feature] = value and gate_values[feature]
        sources[feature] = source

    return FeatureResolution(resolved=resolved, sources=sources, gates=gate_values)
