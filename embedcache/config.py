from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from embedcache.core.errors import InvalidOptionsError
from embedcache.core.feature_extractors import MODEL_TYPES
from embedcache.core.similarity import available_metrics

VERSION = "0.1.0"


@dataclass
class FeatureExtractionConfig:
    """Configuration for feature extraction"""
    model_type: str = "histogram"  # Options: histogram, clip, combined
    model_name: str = "openai/clip-vit-base-patch32"
    use_gpu: bool = False
    histogram_bins: int = 32
    cnn_weight: float = 0.7
    enhance_blurry: bool = False
    max_image_dimension: int = 1024
    cache_features: bool = True


@dataclass
class CacheConfig:
    """Configuration for the embedding cache"""
    dimension: Optional[int] = None  # None: fixed by the first insert
    max_bytes: Optional[int] = 64 * 1024 * 1024
    max_entries: Optional[int] = None
    max_age_seconds: Optional[float] = 30 * 60
    eviction_policy: str = "evict"  # Options: evict, raise
    sweep_interval_seconds: float = 60.0
    memory_pressure_percent: Optional[float] = 90.0
    memory_pressure_trim_fraction: float = 0.25
    snapshot_path: str = "data/cache/embeddings.json"
    load_snapshot_on_open: bool = False
    save_snapshot_on_close: bool = False


@dataclass
class SimilaritySearchConfig:
    """Configuration for similarity search"""
    metric: str = "cosine"  # Options: cosine, euclidean, manhattan, correlation
    similarity_threshold: float = 0.7
    max_results: int = 20
    batch_size: int = 10
    n_workers: int = 4
    quantization_levels: int = 8
    use_index: bool = False
    expand_adjacent_buckets: bool = False


@dataclass
class ApiConfig:
    """Configuration for the HTTP server"""
    host: str = "127.0.0.1"
    port: int = 8000


SECTIONS = {
    'feature_extraction': FeatureExtractionConfig,
    'cache': CacheConfig,
    'similarity_search': SimilaritySearchConfig,
    'api': ApiConfig,
}


def _section_from_dict(cls, data: dict, section: str):
    if not isinstance(data, dict):
        raise InvalidOptionsError(f"Config section '{section}' must be a mapping")

    recognized = {f.name for f in fields(cls)}
    unknown = set(data) - recognized
    if unknown:
        raise InvalidOptionsError(
            f"Unknown option(s) in '{section}': {', '.join(sorted(unknown))}",
            details={'recognized': sorted(recognized)}
        )
    return cls(**data)


@dataclass
class SystemConfig:
    """System-wide configuration"""
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = True

    # Feature extraction
    feature_extraction: FeatureExtractionConfig = field(
        default_factory=FeatureExtractionConfig
    )

    # Embedding cache
    cache: CacheConfig = field(default_factory=CacheConfig)

    # Similarity search
    similarity_search: SimilaritySearchConfig = field(
        default_factory=SimilaritySearchConfig
    )

    # HTTP server
    api: ApiConfig = field(default_factory=ApiConfig)

    def validate(self) -> 'SystemConfig':
        """Reject out-of-range values; returns self for chaining"""
        errors = []
        fe = self.feature_extraction
        cache = self.cache
        ss = self.similarity_search

        if self.log_level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"log_level: {self.log_level}")
        if fe.model_type not in MODEL_TYPES:
            errors.append(f"feature_extraction.model_type: {fe.model_type}")
        if fe.histogram_bins <= 0:
            errors.append("feature_extraction.histogram_bins must be positive")
        if not 0.0 <= fe.cnn_weight <= 1.0:
            errors.append("feature_extraction.cnn_weight must be in [0, 1]")
        for name in ('dimension', 'max_bytes', 'max_entries', 'max_age_seconds'):
            value = getattr(cache, name)
            if value is not None and value <= 0:
                errors.append(f"cache.{name} must be positive")
        if cache.eviction_policy not in ('evict', 'raise'):
            errors.append(f"cache.eviction_policy: {cache.eviction_policy}")
        if cache.sweep_interval_seconds <= 0:
            errors.append("cache.sweep_interval_seconds must be positive")
        if not 0.0 < cache.memory_pressure_trim_fraction <= 1.0:
            errors.append("cache.memory_pressure_trim_fraction must be in (0, 1]")
        if ss.metric not in available_metrics():
            errors.append(f"similarity_search.metric: {ss.metric}")
        if not 0.0 <= ss.similarity_threshold <= 1.0:
            errors.append("similarity_search.similarity_threshold must be in [0, 1]")
        if ss.max_results <= 0 or ss.batch_size <= 0 or ss.n_workers <= 0:
            errors.append("similarity_search.max_results, batch_size and n_workers must be positive")
        if not 1 <= ss.quantization_levels <= 16:
            errors.append("similarity_search.quantization_levels must be in [1, 16]")

        if errors:
            raise InvalidOptionsError("Invalid configuration: " + "; ".join(errors),
                                      details={'errors': errors})
        return self

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, config_dict: Optional[dict]) -> 'SystemConfig':
        """Build a validated config, rejecting unrecognized keys"""
        config_dict = dict(config_dict or {})

        sections = {}
        for name, section_cls in SECTIONS.items():
            if name in config_dict:
                sections[name] = _section_from_dict(section_cls, config_dict.pop(name) or {}, name)

        config = _section_from_dict(cls, config_dict, 'root')
        for name, value in sections.items():
            setattr(config, name, value)

        return config.validate()

    def save(self, path: str = "config.yaml"):
        """Save configuration to YAML file"""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, indent=2)

    @classmethod
    def load(cls, path: str = "config.yaml") -> 'SystemConfig':
        """Load configuration from YAML file"""
        if not Path(path).exists():
            return cls()  # Return default config

        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f)

        return cls.from_dict(config_dict)
