from typing import List

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logger import get_logger


_DEFAULT_PROXY_HOSTS = ",".join(
    [
        "cdn.pandascore.co",
        "*.cloudfront.net",
        "*.akamaihd.net",
        "*.fastly.net",
        "*.cdninstagram.com",
        "*.fbcdn.net",
        "*.twimg.com",
    ]
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Proxy fetch service: POST {"url": ...} -> {"success", "imageData", "error"}
    image_proxy_url: str = Field("", alias="IMAGE_PROXY_URL")
    image_proxy_token: str = Field("", alias="IMAGE_PROXY_TOKEN")
    image_proxy_hosts_raw: str = Field(_DEFAULT_PROXY_HOSTS, alias="IMAGE_PROXY_HOST_PATTERNS")
    image_proxy_thumbnails: bool = Field(default=False, alias="IMAGE_PROXY_THUMBNAILS")
    image_direct_timeout_seconds: float = Field(default=4.0, alias="IMAGE_DIRECT_TIMEOUT_SECONDS")
    image_proxy_timeout_seconds: float = Field(default=15.0, alias="IMAGE_PROXY_TIMEOUT_SECONDS")
    image_max_bytes: int = Field(default=2 * 1024 * 1024, alias="IMAGE_MAX_BYTES")

    background_url: str = Field("", alias="BACKGROUND_URL")
    default_title: str = Field("Watchparty Schedule", alias="DEFAULT_TITLE")
    emphasis_name: str = Field("BIG", alias="EMPHASIS_NAME")
    emphasis_caption: str = Field("Anwesenheitspflicht", alias="EMPHASIS_CAPTION")
    fonts_dir: str = Field("", alias="FONTS_DIR")

    export_filename: str = Field("match-graphic.png", alias="EXPORT_FILENAME")
    export_image_wait_ms: int = Field(default=5000, alias="EXPORT_IMAGE_WAIT_MS")

    @model_validator(mode="after")
    def validate_timeouts(self):
        if self.image_direct_timeout_seconds <= 0:
            raise ValueError("IMAGE_DIRECT_TIMEOUT_SECONDS must be positive")
        if self.image_proxy_timeout_seconds <= 0:
            raise ValueError("IMAGE_PROXY_TIMEOUT_SECONDS must be positive")
        if not (self.image_proxy_url or "").strip():
            logger = get_logger("settings")
            logger.warning("IMAGE_PROXY_URL is not configured; cross-origin logos fall back to direct loads only")
        return self

    @property
    def image_proxy_hosts(self) -> List[str]:
        return [x.strip().lower() for x in self.image_proxy_hosts_raw.split(",") if x.strip()]

    @property
    def is_prod(self) -> bool:
        return (self.app_env or "dev").strip().lower() in {"prod", "production"}


default_settings = Settings()
settings = default_settings
