"""Application configuration contract."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")

    package_name: str = Field(alias="PACKAGE_NAME", default="rust-dnf")
    package_version: str = Field(alias="PACKAGE_VERSION", default="0.1.0")
    source_root: str = Field(alias="SOURCE_ROOT", default=".")
    output_dir: str = Field(alias="OUTPUT_DIR", default="rpm-build")
    descriptor_path: str = Field(alias="DESCRIPTOR_PATH", default="packaging/rust-dnf.yaml")
    archive_excludes: str = Field(alias="ARCHIVE_EXCLUDES", default="target,rpm-build,.git")
    source_date_epoch: int = Field(alias="SOURCE_DATE_EPOCH", default=0)

    toolchain_cache_var: str = Field(alias="TOOLCHAIN_CACHE_VAR", default="CARGO_HOME")
    keep_toolchain_cache: int = Field(alias="KEEP_TOOLCHAIN_CACHE", default=0)
    build_env_allowlist: str = Field(
        alias="BUILD_ENV_ALLOWLIST", default="PATH,HOME,LANG,LC_ALL,TZ"
    )
    command_timeout_seconds: int = Field(alias="COMMAND_TIMEOUT_SECONDS", default=3600)
    command_log_max_bytes: int = Field(alias="COMMAND_LOG_MAX_BYTES", default=32 * 1024)

    # 0 disables the limit
    build_max_memory_mb: int = Field(alias="BUILD_MAX_MEMORY_MB", default=0)
    build_max_cpu_seconds: int = Field(alias="BUILD_MAX_CPU_SECONDS", default=0)

    lock_timeout_seconds: float = Field(alias="LOCK_TIMEOUT_SECONDS", default=0.0)

    def exclusions(self) -> list[str]:
        items = [item.strip() for item in self.archive_excludes.split(",") if item.strip()]
        output_name = Path(self.output_dir).name
        if output_name and output_name not in items:
            items.append(output_name)
        return items

    def env_allowlist(self) -> set[str]:
        return {item.strip() for item in self.build_env_allowlist.split(",") if item.strip()}


def validate_settings_for_env(settings: Settings) -> None:
    problems: list[str] = []
    if not settings.package_name.strip():
        problems.append("PACKAGE_NAME")
    if not settings.package_version.strip():
        problems.append("PACKAGE_VERSION")
    if not settings.toolchain_cache_var.strip():
        problems.append("TOOLCHAIN_CACHE_VAR")
    if settings.command_timeout_seconds <= 0:
        problems.append("COMMAND_TIMEOUT_SECONDS(must be > 0)")
    if settings.build_max_memory_mb < 0:
        problems.append("BUILD_MAX_MEMORY_MB(must be >= 0)")
    if settings.build_max_cpu_seconds < 0:
        problems.append("BUILD_MAX_CPU_SECONDS(must be >= 0)")
    if settings.lock_timeout_seconds < 0:
        problems.append("LOCK_TIMEOUT_SECONDS(must be >= 0)")
    if settings.source_date_epoch < 0:
        problems.append("SOURCE_DATE_EPOCH(must be >= 0)")

    if settings.app_env == "prod":
        for key, value in {
            "OUTPUT_DIR": settings.output_dir,
            "SOURCE_ROOT": settings.source_root,
        }.items():
            if not value.startswith("/"):
                problems.append(f"{key}(absolute path required)")

    if problems:
        keys = ", ".join(sorted(set(problems)))
        raise ValueError(f"invalid configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
