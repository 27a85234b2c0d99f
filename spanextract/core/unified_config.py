"""
Unified configuration for the span extraction pipeline.

All settings live here and can be loaded from environment variables (and a
``.env`` file) with per-environment defaults.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv

from spanextract.exceptions import ConfigurationError

load_dotenv()


class Environment(Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class ChunkingStrategy(str, Enum):
    FIXED = "fixed"
    SEMANTIC = "semantic"


_STRATEGY_ALIASES = {
    "fixed_size": "fixed",
    "fixedsize": "fixed",
    "sentence": "semantic",
    "paragraph": "semantic",
}


def normalize_strategy(value: Any) -> ChunkingStrategy:
    if isinstance(value, ChunkingStrategy):
        return value
    name = str(value).strip().lower()
    name = _STRATEGY_ALIASES.get(name, name)
    try:
        return ChunkingStrategy(name)
    except ValueError:
        raise ConfigurationError(f"Unknown chunking strategy '{value}'", field="strategy", value=value)


def _get_env_value(*keys: str, default: Optional[str] = None) -> Optional[str]:
    """Return the first environment variable value set among the provided keys."""
    for key in keys:
        value = os.getenv(key)
        if value is not None:
            return value
    return default


def _env_int(*keys: str, default: int, min_value: Optional[int] = None) -> int:
    """Fetch an int from env with optional lower bound."""
    raw = _get_env_value(*keys)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    if min_value is not None and value < min_value:
        return min_value
    return value


def _env_optional_int(*keys: str, default: Optional[int] = None) -> Optional[int]:
    raw = _get_env_value(*keys)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_float(
    *keys: str,
    default: float,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None
) -> float:
    """Fetch a float from env with optional bounds."""
    raw = _get_env_value(*keys)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if min_value is not None and value < min_value:
        value = min_value
    if max_value is not None and value > max_value:
        value = max_value
    return value


def _env_bool(*keys: str, default: bool = False) -> bool:
    """Fetch a boolean flag from env."""
    raw = _get_env_value(*keys)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class AlignmentConfig:
    """Controls how extraction text is located in the source."""

    enable_fuzzy_alignment: bool = True
    fuzzy_alignment_threshold: float = 0.75
    accept_match_lesser: bool = False
    # Lower bound for lesser matches, as a fraction of the threshold.
    lesser_match_ratio: float = 0.5
    case_sensitive: bool = False
    max_search_window: int = 2000

    def validate(self) -> None:
        if not 0.0 <= self.fuzzy_alignment_threshold <= 1.0:
            raise ConfigurationError(
                "fuzzy_alignment_threshold must be within [0, 1]",
                field="fuzzy_alignment_threshold",
                value=self.fuzzy_alignment_threshold,
            )
        if not 0.0 <= self.lesser_match_ratio <= 1.0:
            raise ConfigurationError(
                "lesser_match_ratio must be within [0, 1]",
                field="lesser_match_ratio",
                value=self.lesser_match_ratio,
            )
        if self.max_search_window < 1:
            raise ConfigurationError(
                "max_search_window must be positive",
                field="max_search_window",
                value=self.max_search_window,
            )


@dataclass
class ChunkingConfig:
    """Chunk planning settings. ``max_chunk_size=None`` defers to ``max_char_buffer``."""

    max_chunk_size: Optional[int] = None
    # ChunkingStrategy or its name; resolved when the chunker is built.
    strategy: Union[ChunkingStrategy, str] = ChunkingStrategy.FIXED
    overlap_size: int = 0
    size_unit: str = "chars"  # "chars" or "tokens"
    tokenizer: str = "regex"  # "regex" or "tiktoken"
    encoding_name: str = "cl100k_base"

    @property
    def strategy_name(self) -> str:
        return getattr(self.strategy, "value", str(self.strategy))


@dataclass
class ValidationConfig:
    """Resolver settings."""

    save_raw_outputs: bool = False
    raw_outputs_dir: str = "raw_outputs"
    enable_type_coercion: bool = True
    max_truncation_attempts: int = 8
    attribute_suffix: str = "_attributes"


@dataclass
class ExtractConfig:
    """
    Top-level pipeline configuration: model settings, orchestration limits and
    the alignment / chunking / validation sections.
    """

    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    log_level: str = "INFO"

    # Model provider
    llm_backend: str = "ollama"
    model_id: str = "mistral"
    model_url: str = "http://localhost:11434"
    request_timeout: int = 120
    llm_max_retries: int = 3
    llm_retry_delay: float = 2.0
    temperature: float = 0.5
    max_output_tokens: Optional[int] = None

    # llama.cpp backend
    llm_model_path: str = "models/llm/mistral-7b-instruct-v0.2.Q4_K_M.gguf"
    llm_n_ctx: int = 8192
    llm_n_threads: int = 4
    llm_n_gpu_layers: int = -1

    # transformers backend
    llm_model_id: str = "mistralai/Mistral-7B-Instruct-v0.2"
    enable_gpu: bool = True

    # Orchestration
    max_char_buffer: int = 1000
    batch_length: int = 10
    max_workers: int = 10
    additional_context: Optional[str] = None
    fence_output: bool = True

    # Multi-pass refinement
    extraction_passes: int = 1
    enable_multipass: bool = False
    multipass_min_extractions: int = 1
    multipass_quality_threshold: float = 0.3

    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)

    @classmethod
    def from_environment(cls) -> 'ExtractConfig':
        """Load configuration from environment variables"""

        env_name = _get_env_value('SPANEXTRACT_ENV', 'ENVIRONMENT', default='development').lower()
        try:
            environment = Environment(env_name)
        except ValueError:
            environment = Environment.DEVELOPMENT

        if environment == Environment.TESTING:
            return cls._testing_config()
        config = cls._base_config(environment)
        if environment == Environment.PRODUCTION:
            config.debug = False
            config.log_level = _get_env_value('SPANEXTRACT_LOG_LEVEL', 'LOG_LEVEL', default='WARNING')
        return config

    @classmethod
    def _base_config(cls, environment: Environment) -> 'ExtractConfig':
        return cls(
            environment=environment,
            debug=_env_bool('SPANEXTRACT_DEBUG', default=False),
            log_level=_get_env_value('SPANEXTRACT_LOG_LEVEL', 'LOG_LEVEL', default='INFO'),
            llm_backend=_get_env_value('SPANEXTRACT_LLM_BACKEND', default=cls.llm_backend),
            model_id=_get_env_value('SPANEXTRACT_MODEL_ID', default=cls.model_id),
            model_url=_get_env_value('SPANEXTRACT_MODEL_URL', 'OLLAMA_HOST', default=cls.model_url),
            request_timeout=_env_int('SPANEXTRACT_REQUEST_TIMEOUT', default=cls.request_timeout, min_value=1),
            llm_max_retries=_env_int('SPANEXTRACT_MAX_RETRIES', default=cls.llm_max_retries, min_value=0),
            temperature=_env_float('SPANEXTRACT_TEMPERATURE', default=cls.temperature, min_value=0.0, max_value=2.0),
            max_output_tokens=_env_optional_int('SPANEXTRACT_MAX_OUTPUT_TOKENS'),
            llm_model_path=_get_env_value('LLM_MODEL_PATH', default=cls.llm_model_path),
            llm_n_ctx=_env_int('LLM_N_CTX', default=cls.llm_n_ctx, min_value=256),
            llm_n_threads=_env_int('LLM_N_THREADS', default=cls.llm_n_threads, min_value=1),
            llm_n_gpu_layers=_env_int('LLM_GPU_LAYERS', default=cls.llm_n_gpu_layers),
            llm_model_id=_get_env_value('LLM_MODEL_ID', default=cls.llm_model_id),
            enable_gpu=_env_bool('ENABLE_GPU', default=True),
            max_char_buffer=_env_int('SPANEXTRACT_MAX_CHAR_BUFFER', default=cls.max_char_buffer, min_value=1),
            batch_length=_env_int('SPANEXTRACT_BATCH_LENGTH', default=cls.batch_length, min_value=1),
            max_workers=_env_int('SPANEXTRACT_MAX_WORKERS', 'MAX_WORKERS', default=cls.max_workers, min_value=1),
            extraction_passes=_env_int('SPANEXTRACT_EXTRACTION_PASSES', default=cls.extraction_passes, min_value=1),
            enable_multipass=_env_bool('SPANEXTRACT_ENABLE_MULTIPASS', default=False),
            multipass_min_extractions=_env_int(
                'SPANEXTRACT_MULTIPASS_MIN_EXTRACTIONS', default=cls.multipass_min_extractions, min_value=0
            ),
            multipass_quality_threshold=_env_float(
                'SPANEXTRACT_MULTIPASS_QUALITY_THRESHOLD',
                default=cls.multipass_quality_threshold,
                min_value=0.0,
                max_value=1.0,
            ),
            alignment=AlignmentConfig(
                enable_fuzzy_alignment=_env_bool('SPANEXTRACT_ENABLE_FUZZY_ALIGNMENT', default=True),
                fuzzy_alignment_threshold=_env_float(
                    'SPANEXTRACT_FUZZY_ALIGNMENT_THRESHOLD', default=0.75, min_value=0.0, max_value=1.0
                ),
                accept_match_lesser=_env_bool('SPANEXTRACT_ACCEPT_MATCH_LESSER', default=False),
                case_sensitive=_env_bool('SPANEXTRACT_CASE_SENSITIVE', default=False),
                max_search_window=_env_int('SPANEXTRACT_MAX_SEARCH_WINDOW', default=2000, min_value=1),
            ),
            chunking=ChunkingConfig(
                max_chunk_size=_env_optional_int('SPANEXTRACT_MAX_CHUNK_SIZE'),
                strategy=_get_env_value('SPANEXTRACT_CHUNKING_STRATEGY', default='fixed'),
                overlap_size=_env_int('SPANEXTRACT_CHUNK_OVERLAP', default=0, min_value=0),
                size_unit=_get_env_value('SPANEXTRACT_CHUNK_UNIT', default='chars'),
                tokenizer=_get_env_value('SPANEXTRACT_TOKENIZER', default='regex'),
                encoding_name=_get_env_value('SPANEXTRACT_TIKTOKEN_ENCODING', default='cl100k_base'),
            ),
            validation=ValidationConfig(
                save_raw_outputs=_env_bool('SPANEXTRACT_SAVE_RAW_OUTPUTS', default=False),
                raw_outputs_dir=_get_env_value('SPANEXTRACT_RAW_OUTPUTS_DIR', default='raw_outputs'),
                enable_type_coercion=_env_bool('SPANEXTRACT_TYPE_COERCION', default=True),
            ),
        )

    @classmethod
    def _testing_config(cls) -> 'ExtractConfig':
        """Testing environment configuration"""
        return cls(
            environment=Environment.TESTING,
            debug=False,
            log_level="WARNING",
            enable_gpu=False,
            llm_n_gpu_layers=0,
            llm_max_retries=0,
            max_workers=4,
            batch_length=4,
        )

    def validate(self) -> 'ExtractConfig':
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1", field="max_workers", value=self.max_workers)
        if self.batch_length < 1:
            raise ConfigurationError("batch_length must be at least 1", field="batch_length", value=self.batch_length)
        if self.max_char_buffer < 1:
            raise ConfigurationError(
                "max_char_buffer must be at least 1", field="max_char_buffer", value=self.max_char_buffer
            )
        if self.extraction_passes < 1:
            raise ConfigurationError(
                "extraction_passes must be at least 1", field="extraction_passes", value=self.extraction_passes
            )
        if self.multipass_min_extractions < 0:
            raise ConfigurationError(
                "multipass_min_extractions cannot be negative",
                field="multipass_min_extractions",
                value=self.multipass_min_extractions,
            )
        if not 0.0 <= self.multipass_quality_threshold <= 1.0:
            raise ConfigurationError(
                "multipass_quality_threshold must be within [0, 1]",
                field="multipass_quality_threshold",
                value=self.multipass_quality_threshold,
            )
        if self.chunking.size_unit not in {"chars", "tokens"}:
            raise ConfigurationError(
                "chunking.size_unit must be 'chars' or 'tokens'",
                field="chunking.size_unit",
                value=self.chunking.size_unit,
            )
        if self.chunking.tokenizer not in {"regex", "tiktoken"}:
            raise ConfigurationError(
                "chunking.tokenizer must be 'regex' or 'tiktoken'",
                field="chunking.tokenizer",
                value=self.chunking.tokenizer,
            )
        self.alignment.validate()
        return self

    @property
    def multipass_active(self) -> bool:
        return self.enable_multipass and self.extraction_passes > 1

    def effective_chunk_size(self) -> int:
        if self.chunking.max_chunk_size is not None:
            return self.chunking.max_chunk_size
        return self.max_char_buffer

    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def get_llm_config(self) -> Dict[str, Any]:
        """Get all LLM-related configuration."""
        return {
            'backend': self.llm_backend,
            'model_id': self.model_id,
            'model_url': self.model_url,
            'request_timeout': self.request_timeout,
            'max_retries': self.llm_max_retries,
            'retry_delay': self.llm_retry_delay,
            'temperature': self.temperature,
            'max_output_tokens': self.max_output_tokens,

            # llama.cpp specific
            'model_path': self.llm_model_path,
            'n_ctx': self.llm_n_ctx,
            'n_threads': self.llm_n_threads,
            'n_gpu_layers': self.llm_n_gpu_layers,

            # transformers specific
            'hf_model_id': self.llm_model_id,
            'enable_gpu': self.enable_gpu,
        }

    def get_processing_config(self) -> Dict[str, Any]:
        return {
            'max_char_buffer': self.max_char_buffer,
            'batch_length': self.batch_length,
            'max_workers': self.max_workers,
            'extraction_passes': self.extraction_passes,
            'enable_multipass': self.enable_multipass,
            'multipass_min_extractions': self.multipass_min_extractions,
            'multipass_quality_threshold': self.multipass_quality_threshold,
            'chunk_size': self.effective_chunk_size(),
            'chunking_strategy': self.chunking.strategy_name,
            'chunk_overlap': self.chunking.overlap_size,
        }


# Global configuration instance
_config_instance: Optional[ExtractConfig] = None


def get_config() -> ExtractConfig:
    """Get the global configuration instance"""
    global _config_instance
    if _config_instance is None:
        _config_instance = ExtractConfig.from_environment()
    return _config_instance


def reload_config() -> ExtractConfig:
    """Reload configuration from environment"""
    global _config_instance
    _config_instance = ExtractConfig.from_environment()
    return _config_instance


__all__ = [
    'AlignmentConfig',
    'ChunkingConfig',
    'ChunkingStrategy',
    'Environment',
    'ExtractConfig',
    'ValidationConfig',
    'get_config',
    'normalize_strategy',
    'reload_config',
]
