from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


REPO_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    api_host: str = Field(default="0.0.0.0", alias="OCR_API_HOST")
    api_port: int = Field(default=3001, alias="OCR_API_PORT")

    storage_backend: str = Field(default="s3", pattern="^(s3|local)$", alias="OCR_STORAGE_BACKEND")
    bucket_name: str = Field(default="ocr-assets", alias="OCR_BUCKET_NAME")
    aws_region: str = Field(default="ap-northeast-1", alias="OCR_AWS_REGION")
    local_storage_dir: str = Field(default="assets", alias="OCR_LOCAL_STORAGE_DIR")

    cloud_provider: str = Field(default="vultr", pattern="^(vultr|aws)$", alias="OCR_CLOUD_PROVIDER")
    vultr_api_url: str = Field(default="https://api.vultr.com/v2", alias="OCR_VULTR_API_URL")
    vultr_api_key: str | None = Field(default=None, alias="OCR_VULTR_API_KEY")
    vultr_api_key_env: str = Field(default="VULTR_API_KEY", alias="OCR_VULTR_API_KEY_ENV")
    instance_region: str = Field(default="nrt", alias="OCR_INSTANCE_REGION")
    instance_plan: str = Field(default="vcg-a16-2c-16g-4vram", alias="OCR_INSTANCE_PLAN")
    instance_os_id: int = Field(default=2284, alias="OCR_INSTANCE_OS_ID")
    instance_script_id: str | None = Field(default=None, alias="OCR_INSTANCE_SCRIPT_ID")
    instance_sshkey_ids: list[str] = Field(default_factory=list, alias="OCR_INSTANCE_SSHKEY_IDS")
    instance_label: str = Field(default="bookocr-worker", alias="OCR_INSTANCE_LABEL")
    metadata_url: str = Field(default="http://169.254.169.254", alias="OCR_METADATA_URL")

    worker_port: int = Field(default=8080, alias="OCR_WORKER_PORT")
    health_path: str = Field(default="/health", alias="OCR_HEALTH_PATH")
    health_timeout_seconds: float = Field(default=5.0, gt=0.0, alias="OCR_HEALTH_TIMEOUT_SECONDS")
    poll_interval_seconds: float = Field(default=20.0, gt=0.0, alias="OCR_POLL_INTERVAL_SECONDS")
    ready_timeout_seconds: float = Field(default=20 * 60.0, gt=0.0, alias="OCR_READY_TIMEOUT_SECONDS")
    idle_timeout_seconds: float = Field(default=30 * 60.0, gt=0.0, alias="OCR_IDLE_TIMEOUT_SECONDS")
    retry_delay_seconds: float = Field(default=20.0, ge=0.0, alias="OCR_RETRY_DELAY_SECONDS")
    check_interval_seconds: float = Field(default=60.0, gt=0.0, alias="OCR_CHECK_INTERVAL_SECONDS")
    dispatch_timeout_seconds: float | None = Field(default=3600.0, alias="OCR_DISPATCH_TIMEOUT_SECONDS")
    max_task_attempts: int = Field(default=0, ge=0, alias="OCR_MAX_TASK_ATTEMPTS")

    worker_buffer_dir: str = Field(default="images_buffer", alias="OCR_WORKER_BUFFER_DIR")
    worker_docker_image: str = Field(default="kotenocr-cli-py37:latest", alias="OCR_WORKER_DOCKER_IMAGE")
    worker_docker_workdir: str = Field(default="/root/kotenocr_cli", alias="OCR_WORKER_DOCKER_WORKDIR")
    worker_self_action: str = Field(default="terminate", pattern="^(terminate|stop)$", alias="OCR_WORKER_SELF_ACTION")
    worker_require_gpu: bool = Field(default=True, alias="OCR_WORKER_REQUIRE_GPU")
    worker_install_command: str = Field(
        default="python3 -m pip install --break-system-packages bookocr",
        alias="OCR_WORKER_INSTALL_COMMAND",
    )

    log_dir: str = Field(default="logs", alias="OCR_LOG_DIR")
    log_level: str = Field(default="INFO", alias="OCR_LOG_LEVEL")
    log_retention_days: int = Field(default=14, ge=1, alias="OCR_LOG_RETENTION_DAYS")
    production: bool = Field(default=False, alias="OCR_PRODUCTION")

    def resolve_path(self, path_value: str) -> Path:
        candidate = Path(path_value).expanduser()
        if candidate.is_absolute():
            return candidate
        return REPO_ROOT / candidate

    @property
    def local_storage_path(self) -> Path:
        return self.resolve_path(self.local_storage_dir)

    @property
    def worker_buffer_path(self) -> Path:
        return self.resolve_path(self.worker_buffer_dir)

    @property
    def log_path(self) -> Path:
        return self.resolve_path(self.log_dir)

    def ensure_runtime_dirs(self) -> None:
        self.log_path.mkdir(parents=True, exist_ok=True)
        if self.storage_backend == "local":
            self.local_storage_path.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_runtime_dirs()
    return settings
