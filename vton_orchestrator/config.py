"""Configuration management for the try-on job orchestrator."""

from pathlib import Path
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings


class ConsensusConfig(BaseModel):
    """Fan-out sizes and the empirical constants used by the consensus stages."""
    detector_count: int = Field(default=5, ge=1)
    segmentation_workers: int = Field(default=5, ge=1)
    iqr_multiplier: float = 1.5
    vote_divisor: float = Field(default=2.5, gt=0)  # pixel is "in" when votes > N / divisor
    vote_pixel_threshold: int = 128
    feather_ratio: float = 0.03  # of the shorter image side
    crop_mode: str = "expand"  # "expand" or "frame"
    expansion_percent: float = Field(default=0.10, ge=0.0)


class RetryConfig(BaseModel):
    """Generation retry ladder settings."""
    candidates_per_attempt: int = Field(default=3, ge=1)
    escalation_threshold: int = Field(default=2, ge=1)
    max_attempts: int = Field(default=4, ge=1)
    tiers: list[str] = Field(default_factory=lambda: ["standard", "pro"])


class WatchdogConfig(BaseModel):
    """Stalled job recovery settings."""
    stall_seconds: float = Field(default=600.0, gt=0)
    max_revivals: int = 3
    # long engine calls refresh the job this often so they never look stalled
    heartbeat_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def check_heartbeat(self):
        if self.heartbeat_seconds >= self.stall_seconds:
            raise ValueError("heartbeat_seconds must be shorter than stall_seconds")
        return self


class ComfyUIConfig(BaseModel):
    """ComfyUI connection settings for the ComfyUI-backed engine tier."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8188
    tier: str = "pro"  # which ladder tier ComfyUI serves
    workflow_path: Path = Path("workflows/tryon_api.json")
    poll_interval: float = 0.5
    timeout: float = 300.0

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class AgentConfig(BaseModel):
    """Azure OpenAI agents (quality evaluator, prompt writer)."""
    evaluator_name: str = "TryOnQualityEvaluator"
    prompt_writer_name: str = "TryOnPromptWriter"
    template_prompts: bool = False  # skip the prompt agent, use the fixed template


class ServiceConfig(BaseModel):
    """Endpoints of the remote collaborators."""
    detection_url: str = "http://127.0.0.1:8101/detect"
    segmentation_url: str = "http://127.0.0.1:8102/segment"
    engine_urls: dict[str, str] = Field(default_factory=lambda: {
        "standard": "http://127.0.0.1:8103/generate",
        "pro": "http://127.0.0.1:8104/generate",
    })
    dispatch_base_url: str = "http://127.0.0.1:8000"
    request_timeout: float = 120.0
    engine_timeout: float = 300.0


class PipelineConfig(BaseSettings):
    """Main orchestrator configuration."""

    # Paths
    jobs_file: Path = Path("data/jobs.json")
    artifacts_dir: Path = Path("data/artifacts")

    # Sub-configs
    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    services: ServiceConfig = Field(default_factory=ServiceConfig)
    comfyui: ComfyUIConfig = Field(default_factory=ComfyUIConfig)
    agents: AgentConfig = Field(default_factory=AgentConfig)

    store_backend: str = "json"  # "json" or "memory"
    dispatch_mode: str = "inprocess"  # "inprocess" or "http"

    log_level: str = "INFO"
    log_json: bool = False

    class Config:
        env_file = ".env"
        env_prefix = "VTON_"
        env_nested_delimiter = "__"
        extra = "ignore"

    @model_validator(mode="after")
    def check_stall_window(self):
        longest = max(self.services.engine_timeout, self.comfyui.timeout)
        if self.watchdog.stall_seconds <= longest:
            raise ValueError(
                f"watchdog.stall_seconds ({self.watchdog.stall_seconds}) must exceed "
                f"the longest engine timeout ({longest})"
            )
        return self


def load_config() -> PipelineConfig:
    """Load configuration from environment and defaults."""
    return PipelineConfig()
