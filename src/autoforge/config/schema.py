"""Pydantic models for configuration schema."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OpenAIConfig(BaseModel):
    """OpenAI-specific configuration."""

    api_key: str = ""
    model: str = "gpt-4o"
    max_tokens: int = Field(2000, ge=1, le=32000)
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    timeout: float = Field(60.0, gt=0)


class AnthropicConfig(BaseModel):
    """Anthropic-specific configuration."""

    api_key: str = ""
    model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int = Field(2000, ge=1, le=32000)
    temperature: float = Field(0.3, ge=0.0, le=1.0)
    timeout: float = Field(60.0, gt=0)


class LocalModelConfig(BaseModel):
    """Self-hosted model server (Ollama API) configuration."""

    base_url: str = "http://localhost:11434"
    model: str = "codellama:13b"
    timeout: float = Field(120.0, gt=0)
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    allow_remote_host: bool = False

    @model_validator(mode="after")
    def check_remote_host(self) -> "LocalModelConfig":
        """Validate the server URL and reject remote hosts unless allowed."""
        from urllib.parse import urlparse

        from ..utils.security import validate_local_model_url

        if not validate_local_model_url(self.base_url, allow_remote=self.allow_remote_host):
            host = urlparse(self.base_url).hostname
            if not self.allow_remote_host:
                raise ValueError(
                    f"Model server host {host} not allowed. "
                    f"Set allow_remote_host=true to use non-localhost hosts."
                )
            raise ValueError(f"Invalid model server URL: {self.base_url}")
        return self


class ReasoningConfig(BaseModel):
    """Reasoning service configuration used by the fix synthesizer."""

    provider: Literal["openai", "anthropic", "local"] = "openai"
    openai: OpenAIConfig | None = None
    anthropic: AnthropicConfig | None = None
    local: LocalModelConfig | None = None
    max_retries: int = Field(3, ge=1, le=10)
    requests_per_second: float = Field(1.0, gt=0, le=50)


class HealingConfig(BaseModel):
    """Self-healing loop configuration."""

    auto_fix: bool = True
    retry_attempts: int = Field(3, ge=1, le=20)
    rollback_threshold: int = Field(2, ge=0)
    notify_on_fix: bool = True
    loop_interval: float = Field(30.0, gt=0, description="Seconds between queue sweeps")
    context_lines: int = Field(5, ge=1, le=100)
    lint_timeout: float = Field(60.0, gt=0)
    typecheck_timeout: float = Field(120.0, gt=0)
    audit_timeout: float = Field(60.0, gt=0)
    validation_lint_timeout: float = Field(30.0, gt=0)
    validation_typecheck_timeout: float = Field(60.0, gt=0)
    validation_test_timeout: float = Field(120.0, gt=0)


class TestingConfig(BaseModel):
    """Test orchestration configuration."""

    __test__ = False

    unit_tests: bool = True
    integration_tests: bool = True
    e2e_tests: bool = False
    visual_regression: bool = False
    performance_testing: bool = False
    accessibility: bool = True
    auto_fix: bool = True
    backend_url: str = "http://localhost:3001"
    frontend_url: str = "http://localhost:3000"
    server_start_timeout: float = Field(30.0, gt=0)
    poll_interval: float = Field(1.0, gt=0)
    request_timeout: float = Field(10.0, gt=0)
    test_timeout: float = Field(120.0, gt=0)
    accessibility_pages: list[str] = ["/", "/login", "/register"]
    performance_samples: int = Field(10, ge=1, le=1000)
    performance_p95_ms: float = Field(2000.0, gt=0)


class AWSConfig(BaseModel):
    """Static-site deployment target on S3."""

    bucket: str | None = None
    region: str = "us-east-1"


class DeploymentConfig(BaseModel):
    """Deployment state machine configuration."""

    provider: Literal["docker", "vercel", "netlify", "aws"] = "docker"
    auto_scale: bool = False
    health_checks: bool = True
    rollback_on_failure: bool = True
    build_timeout: float = Field(300.0, gt=0)
    deploy_timeout: float = Field(600.0, gt=0)
    startup_timeout: float = Field(300.0, gt=0)
    poll_interval: float = Field(5.0, gt=0)
    smoke_test_timeout: float = Field(60.0, gt=0)
    health_paths: list[str] = ["/health", "/api/health"]
    record_ttl: int = Field(3600, ge=60, description="Seconds an active record stays cached")
    compose_command: list[str] = ["docker", "compose"]
    aws: AWSConfig = AWSConfig()


class FileLoggingConfig(BaseModel):
    """File logging configuration."""

    enabled: bool = False
    path: Path = Path("workspace/logs/autoforge.log")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console"] = "console"
    file: FileLoggingConfig = FileLoggingConfig()


class FrameworkConfig(BaseSettings):
    """Root configuration for autoforge."""

    reasoning: ReasoningConfig = ReasoningConfig()
    healing: HealingConfig = HealingConfig()
    testing: TestingConfig = TestingConfig()
    deployment: DeploymentConfig = DeploymentConfig()
    logging: LoggingConfig = LoggingConfig()
    workspace_dir: Path = Path("workspace")

    model_config = SettingsConfigDict(
        env_prefix="FRAMEWORK_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )
