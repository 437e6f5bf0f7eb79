from dataclasses import dataclass, field, asdict
import yaml
from pathlib import Path


@dataclass
class NormalizerConfig:
    """Configuration for thumbnail normalization"""
    max_dimension: int = 400
    thumbnail_quality: int = 80  # JPEG quality of the stored preview


@dataclass
class FingerprintConfig:
    """Configuration for fingerprint extraction"""
    hash_method: str = "phash"  # Options: phash, dhash, average
    hash_size: int = 8  # hash_size ** 2 bits


@dataclass
class DuplicateDetectionConfig:
    """Configuration for near-duplicate detection"""
    hash_threshold: int = 5
    num_bands: int = 8  # Band count of the multi-index
    linkage: str = "greedy"  # Options: greedy, connected


@dataclass
class IndexingConfig:
    """Configuration for the indexing pipeline"""
    tagging_budget: int = 5  # Items per run sent to the tagging service
    n_workers: int = 1
    show_progress: bool = True


@dataclass
class SemanticConfig:
    """Configuration for the semantic tagging / query-expansion service"""
    enabled: bool = True
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.0-flash"
    api_key_env: str = "GEMINI_API_KEY"
    timeout_seconds: float = 20.0
    max_tags: int = 5


@dataclass
class SystemConfig:
    """System-wide configuration"""
    database_path: str = "data/visionquest.db"
    log_dir: str = "logs"
    log_level: str = "INFO"

    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    fingerprint: FingerprintConfig = field(default_factory=FingerprintConfig)
    duplicate_detection: DuplicateDetectionConfig = field(
        default_factory=DuplicateDetectionConfig
    )
    indexing: IndexingConfig = field(default_factory=IndexingConfig)
    semantic: SemanticConfig = field(default_factory=SemanticConfig)

    def save(self, path: str = "config.yaml"):
        """Save configuration to YAML file"""
        with open(path, 'w') as f:
            yaml.dump(asdict(self), f, default_flow_style=False, indent=2)

    @classmethod
    def load(cls, path: str = "config.yaml") -> 'SystemConfig':
        """Load configuration from YAML file"""
        if not Path(path).exists():
            return cls()  # Return default config

        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}

        config = cls()

        config.database_path = config_dict.get('database_path', config.database_path)
        config.log_dir = config_dict.get('log_dir', config.log_dir)
        config.log_level = config_dict.get('log_level', config.log_level)

        if 'normalizer' in config_dict:
            nc = config_dict['normalizer']
            config.normalizer = NormalizerConfig(
                max_dimension=nc.get('max_dimension', config.normalizer.max_dimension),
                thumbnail_quality=nc.get('thumbnail_quality', config.normalizer.thumbnail_quality)
            )

        if 'fingerprint' in config_dict:
            fc = config_dict['fingerprint']
            config.fingerprint = FingerprintConfig(
                hash_method=fc.get('hash_method', config.fingerprint.hash_method),
                hash_size=fc.get('hash_size', config.fingerprint.hash_size)
            )

        if 'duplicate_detection' in config_dict:
            dd = config_dict['duplicate_detection']
            config.duplicate_detection = DuplicateDetectionConfig(
                hash_threshold=dd.get('hash_threshold', config.duplicate_detection.hash_threshold),
                num_bands=dd.get('num_bands', config.duplicate_detection.num_bands),
                linkage=dd.get('linkage', config.duplicate_detection.linkage)
            )

        if 'indexing' in config_dict:
            ic = config_dict['indexing']
            config.indexing = IndexingConfig(
                tagging_budget=ic.get('tagging_budget', config.indexing.tagging_budget),
                n_workers=ic.get('n_workers', config.indexing.n_workers),
                show_progress=ic.get('show_progress', config.indexing.show_progress)
            )

        if 'semantic' in config_dict:
            sc = config_dict['semantic']
            config.semantic = SemanticConfig(
                enabled=sc.get('enabled', config.semantic.enabled),
                base_url=sc.get('base_url', config.semantic.base_url),
                model=sc.get('model', config.semantic.model),
                api_key_env=sc.get('api_key_env', config.semantic.api_key_env),
                timeout_seconds=sc.get('timeout_seconds', config.semantic.timeout_seconds),
                max_tags=sc.get('max_tags', config.semantic.max_tags)
            )

        return config
