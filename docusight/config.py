"""
Configuration management for DocuSight
"""

import yaml
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, Union, Tuple
import logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# Placement recommendations below this confidence are always dropped. It bounds
# the size of downstream recommendation lists and is not configurable.
PLACEMENT_MIN_CONFIDENCE = 0.5


def _expand_env_vars(obj: Union[Dict, Any]) -> Union[Dict, Any]:
    """
    Recursively expand environment variables in config values.
    Supports ${VAR_NAME} syntax.
    """
    if isinstance(obj, dict):
        return {key: _expand_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        pattern = r'\$\{([^}]+)\}'
        def replace_var(match):
            var_name = match.group(1)
            return os.getenv(var_name, match.group(0))  # Return original if not found
        return re.sub(pattern, replace_var, obj)
    else:
        return obj


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file

    Args:
        config_path: Path to config file. If None, uses the packaged config.yaml

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    config_path = Path(config_path)

    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}. Using defaults.")
        return get_default_config()

    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        config = _expand_env_vars(config)
        return _merge_defaults(get_default_config(), config)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return get_default_config()


def _merge_defaults(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay a loaded config on the defaults so partial files stay valid."""
    merged = dict(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_default_config() -> Dict[str, Any]:
    """
    Get default configuration values

    Returns:
        Default configuration dictionary
    """
    return {
        'tagging': {
            'object_min': 0.7,
            'scene_min': 0.6,
            'emotion_min': 0.6,
            'high_quality_min': 0.8,
            'strong_narrative_min': 0.7,
        },
        'quality': {
            'weights': {
                'sharpness': 1 / 3,
                'exposure': 1 / 3,
                'noise': 1 / 3,
            },
            'exposure_band': [0.2, 0.8],
            'low_sharpness': 0.3,
            'high_noise': 0.7,
        },
        'documentary': {
            'people_weight': 0.3,
            'architecture_weight': 0.2,
            'composition_weight': 0.5,
        },
        'identity': {
            'acceptance_threshold': 0.75,
            'tie_epsilon': 0.01,
            'merge_suggestion_threshold': 0.6,
        },
        'collections': {
            'min_date': 5,
            'min_location': 3,
            'min_person': 3,
            'confidence': {
                'date': 0.9,
                'location': 0.8,
                'person': 0.85,
            },
        },
        'enrichment': {
            'retry_attempts': 3,
            'retry_backoff_seconds': 0.5,
            'supported': ['image/', 'video/', 'audio/', 'application/pdf', 'text/'],
        },
        'batch': {
            'max_workers': 4,
            'max_queue_size': 100,
        },
        'storage': {
            'backend': 'memory',
            'path': None,
        },
        'logging': {
            'level': 'INFO',
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            'file': None,
        },
    }


def save_config(config: Dict[str, Any], config_path: Path) -> bool:
    """
    Save configuration to YAML file

    Args:
        config: Configuration dictionary to save
        config_path: Path where to save the config

    Returns:
        True if successful, False otherwise
    """
    try:
        with open(config_path, 'w') as f:
            yaml.dump(config, f, default_flow_style=False, indent=2)
        logger.info(f"Saved configuration to {config_path}")
        return True
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to save config to {config_path}: {e}")
        return False


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Get a nested configuration value using dot notation

    Args:
        config: Configuration dictionary
        key_path: Dot-separated key path (e.g., 'identity.acceptance_threshold')
        default: Default value if key not found

    Returns:
        Configuration value or default
    """
    keys = key_path.split('.')
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def update_config_value(config: Dict[str, Any], key_path: str, value: Any) -> None:
    """
    Update a nested configuration value using dot notation

    Args:
        config: Configuration dictionary to update
        key_path: Dot-separated key path (e.g., 'collections.min_date')
        value: New value to set
    """
    keys = key_path.split('.')
    current = config

    for key in keys[:-1]:
        if key not in current:
            current[key] = {}
        current = current[key]

    current[keys[-1]] = value


@dataclass
class LibrarySettings:
    """
    Every tunable threshold and weight used by scoring, identity resolution,
    collection generation and enrichment, in one place.
    """
    # Tagging
    object_tag_min: float = 0.7
    scene_tag_min: float = 0.6
    emotion_tag_min: float = 0.6
    high_quality_min: float = 0.8
    strong_narrative_min: float = 0.7

    # Quality
    sharpness_weight: float = 1 / 3
    exposure_weight: float = 1 / 3
    noise_weight: float = 1 / 3
    exposure_band: Tuple[float, float] = (0.2, 0.8)
    low_sharpness: float = 0.3
    high_noise: float = 0.7

    # Documentary value
    people_weight: float = 0.3
    architecture_weight: float = 0.2
    composition_weight: float = 0.5

    # Identity
    acceptance_threshold: float = 0.75
    tie_epsilon: float = 0.01
    merge_suggestion_threshold: float = 0.6

    # Smart collections
    min_date_members: int = 5
    min_location_members: int = 3
    min_person_members: int = 3
    collection_confidence: Dict[str, float] = field(default_factory=lambda: {
        'date': 0.9, 'location': 0.8, 'person': 0.85,
    })

    # Enrichment
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    supported_mime_prefixes: Tuple[str, ...] = (
        'image/', 'video/', 'audio/', 'application/pdf', 'text/',
    )

    @property
    def placement_min_confidence(self) -> float:
        return PLACEMENT_MIN_CONFIDENCE

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> 'LibrarySettings':
        """Build settings from a loaded configuration dictionary."""
        config = _merge_defaults(get_default_config(), config or {})
        get = lambda path: get_config_value(config, path)
        band = get('quality.exposure_band')
        return cls(
            object_tag_min=float(get('tagging.object_min')),
            scene_tag_min=float(get('tagging.scene_min')),
            emotion_tag_min=float(get('tagging.emotion_min')),
            high_quality_min=float(get('tagging.high_quality_min')),
            strong_narrative_min=float(get('tagging.strong_narrative_min')),
            sharpness_weight=float(get('quality.weights.sharpness')),
            exposure_weight=float(get('quality.weights.exposure')),
            noise_weight=float(get('quality.weights.noise')),
            exposure_band=(float(band[0]), float(band[1])),
            low_sharpness=float(get('quality.low_sharpness')),
            high_noise=float(get('quality.high_noise')),
            people_weight=float(get('documentary.people_weight')),
            architecture_weight=float(get('documentary.architecture_weight')),
            composition_weight=float(get('documentary.composition_weight')),
            acceptance_threshold=float(get('identity.acceptance_threshold')),
            tie_epsilon=float(get('identity.tie_epsilon')),
            merge_suggestion_threshold=float(get('identity.merge_suggestion_threshold')),
            min_date_members=int(get('collections.min_date')),
            min_location_members=int(get('collections.min_location')),
            min_person_members=int(get('collections.min_person')),
            collection_confidence=dict(get('collections.confidence')),
            retry_attempts=int(get('enrichment.retry_attempts')),
            retry_backoff_seconds=float(get('enrichment.retry_backoff_seconds')),
            supported_mime_prefixes=tuple(get('enrichment.supported')),
        )
