import logging
from dataclasses import dataclass, asdict, fields, replace
from typing import Any

logger = logging.getLogger(__name__)

MEDIA_KINDS = ('movie', 'series')


@dataclass(frozen=True)
class PipelineConfig:
    """
    Fully-specified settings for one recommendation run.

    Scoring weights need not sum to 1. ``diversity_weight`` blends the
    diversity term into the final selection and must lie in [0, 1].
    """

    media_kind: str = 'movie'
    max_candidates: int = 50000
    selected_count: int = 50
    similarity_weight: float = 0.4
    novelty_weight: float = 0.2
    rating_weight: float = 0.2
    diversity_weight: float = 0.2
    recent_watch_limit: int = 50
    # Movies diversify on genre only; series also spread across networks
    use_source_diversity: bool = False

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.media_kind not in MEDIA_KINDS:
            raise ValueError(f"media_kind must be one of {MEDIA_KINDS}, got {self.media_kind!r}")
        if self.max_candidates <= 0:
            raise ValueError("max_candidates must be positive")
        if self.selected_count < 0:
            raise ValueError("selected_count must be non-negative")
        if self.recent_watch_limit <= 0:
            raise ValueError("recent_watch_limit must be positive")
        for name in ('similarity_weight', 'novelty_weight', 'rating_weight'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if not (0.0 <= self.diversity_weight <= 1.0):
            raise ValueError("diversity_weight must be in [0, 1]")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_CONFIGS = {
    'movie': PipelineConfig(media_kind='movie'),
    'series': PipelineConfig(
        media_kind='series',
        selected_count=12,
        recent_watch_limit=100,
        use_source_diversity=True,
    ),
}

_FIELD_TYPES = {f.name: f.type for f in fields(PipelineConfig)}
_OVERRIDABLE = set(_FIELD_TYPES) - {'media_kind'}


def default_config(media_kind: str) -> PipelineConfig:
    if media_kind not in DEFAULT_CONFIGS:
        raise ValueError(f"Unknown media kind: {media_kind!r}")
    return DEFAULT_CONFIGS[media_kind]


_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"not a boolean: {value!r}")


def _coerce(name: str, value: Any) -> Any:
    kind = _FIELD_TYPES[name]
    if kind in (bool, 'bool'):
        return _coerce_bool(value)
    if kind in (int, 'int'):
        return int(value)
    return float(value)


def merge_config(base: PipelineConfig, *overrides: dict | None) -> PipelineConfig:
    """
    Apply override dicts to a config; later dicts win.

    Callers pass layers lowest-precedence first, e.g.
    ``merge_config(hardcoded, admin_defaults, user_override, call_overrides)``.
    Unknown keys and ``None`` values are ignored. The result is validated.
    """
    changes: dict[str, Any] = {}
    for layer in overrides:
        if not layer:
            continue
        for key, value in layer.items():
            if value is None:
                continue
            if key not in _OVERRIDABLE:
                logger.warning(f"Ignoring unknown config key '{key}'")
                continue
            try:
                changes[key] = _coerce(key, value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid value for {key}: {value!r}") from e
    return replace(base, **changes)
