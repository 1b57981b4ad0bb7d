"""Pydantic models for configuration and data validation."""

from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GenerationConfig(BaseModel):
    """Image generation parameters snapshotted onto every job.

    Frozen: a job's config never changes in place. Overrides build a new
    instance via ``merge_overrides``.
    """

    model_config = ConfigDict(frozen=True)

    model: str = Field(default="", description="Backend model identifier")
    aspect_ratio: Optional[str] = Field(
        default=None, description="Aspect ratio such as '1:1' or '16:9' (None = model default)"
    )
    resolution: Optional[str] = Field(default="4K", description="Image size: 1K, 2K or 4K")
    thinking_budget: int = Field(
        default=-1, ge=-1, description="Thinking budget (-1 = auto, 0 = off, >0 = token budget)"
    )
    search_enabled: bool = Field(default=False, description="Ground generation with web search")
    safety_thresholds: Dict[str, str] = Field(
        default_factory=dict, description="Harm category -> block threshold"
    )

    def merge_overrides(self, overrides: dict) -> "GenerationConfig":
        """Return a new validated config with the given fields replaced."""
        unknown = set(overrides) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown generation config fields: {sorted(unknown)}")
        data = self.model_dump()
        data.update(overrides)
        return GenerationConfig.model_validate(data)


class QueueConfig(BaseModel):
    """Batch queue limits and pacing."""

    max_jobs: int = Field(default=100, gt=0, description="Maximum number of jobs held in the queue")
    max_variations_per_prompt: int = Field(
        default=10, gt=0, description="Upper bound for variations requested per prompt"
    )
    default_delay_ms: int = Field(
        default=3000, ge=0, description="Delay between consecutive jobs in milliseconds"
    )
    max_delay_ms: int = Field(
        default=60000, gt=0, description="Cap for the delay after rate-limit backoff"
    )
    eta_history_size: int = Field(
        default=20, gt=0, description="Number of recent job durations kept for ETA"
    )
    eta_window: int = Field(
        default=10, gt=0, description="Number of most recent durations averaged for ETA"
    )
    eta_default_ms: int = Field(
        default=30000, gt=0, description="Assumed job duration before any sample exists"
    )
    eta_low_confidence_samples: int = Field(
        default=3, ge=0, description="Below this many samples the ETA is flagged low confidence"
    )

    @field_validator("max_delay_ms")
    @classmethod
    def cap_not_below_default(cls, v: int, info) -> int:
        """Validate that the backoff cap is not below the starting delay."""
        if "default_delay_ms" in info.data and v < info.data["default_delay_ms"]:
            raise ValueError(
                f"max_delay_ms ({v}) must be >= default_delay_ms ({info.data['default_delay_ms']})"
            )
        return v


class BackendConfig(BaseModel):
    """Generation backend connection and transient-retry settings."""

    api_key: Optional[str] = Field(default=None, description="API key for the generation service")
    base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Base URL of the generation service",
    )
    timeout_s: float = Field(default=300.0, gt=0.0, description="Per-request timeout in seconds")
    max_attempts: int = Field(
        default=3, ge=1, description="Attempts per job for transient network/server errors"
    )
    retry_delays_ms: Tuple[int, ...] = Field(
        default=(1000, 2000, 4000), description="Escalating delays between transient retries"
    )


class OutputConfig(BaseModel):
    """Where generated images are written."""

    directory: Optional[str] = Field(
        default=None, description="Output directory (None = images are not written to disk)"
    )
    filename_prefix_length: int = Field(
        default=40, gt=0, description="Characters of the prompt used in output filenames"
    )


class ImageBatchConfig(BaseModel):
    """Complete application configuration with validation."""

    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "ImageBatchConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ImageBatchConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("model") is not None:
            config_dict["generation"]["model"] = cli_args["model"]
        if cli_args.get("ratio") is not None:
            config_dict["generation"]["aspect_ratio"] = cli_args["ratio"]
        if cli_args.get("resolution") is not None:
            config_dict["generation"]["resolution"] = cli_args["resolution"]
        if cli_args.get("thinking_budget") is not None:
            config_dict["generation"]["thinking_budget"] = cli_args["thinking_budget"]
        if cli_args.get("search") is not None:
            config_dict["generation"]["search_enabled"] = cli_args["search"]
        if cli_args.get("delay_ms") is not None:
            config_dict["queue"]["default_delay_ms"] = cli_args["delay_ms"]
        if cli_args.get("output") is not None:
            config_dict["output"]["directory"] = cli_args["output"]
        if cli_args.get("api_key") is not None:
            config_dict["backend"]["api_key"] = cli_args["api_key"]

        return ImageBatchConfig.from_dict(config_dict)
