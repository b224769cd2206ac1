"""
Configuration settings for rtexport.

This module provides a settings class for rtexport, with support for loading
configuration from TOML files and environment variables.
"""

from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

if TYPE_CHECKING:
    from .services.dicom.models import DicomNode
    from .services.export.models import ExportOptions


class Settings(BaseSettings):
    """Main settings class for rtexport.

    This class handles loading configuration from TOML files and environment variables,
    with support for custom settings sources.
    """

    model_config = SettingsConfigDict(
        toml_file=["settings.toml", "settings.custom.toml"], env_prefix="RTEXPORT_", extra="ignore"
    )

    # Remote archive (query/retrieve SCP)
    remote_aet: str = "ARCHIVE"
    remote_host: str = "127.0.0.1"
    remote_port: int = 104

    # Local receiver (storage SCP, C-MOVE destination)
    local_aet: str = "RTEXPORT"
    local_host: str = "0.0.0.0"
    local_port: int = 11112
    max_pdu: int = 16384

    # Timeouts and settle delays, in seconds
    query_timeout: float = 30.0
    move_timeout: float = 300.0
    settle_delay: float = 0.5
    completion_timeout: float = 10.0
    final_settle_delay: float = 2.0

    # Export settings
    export_root: str = str(Path.home() / "rtexport")
    export_examination: bool = True
    export_structure: bool = True
    export_plan: bool = True
    export_dose: bool = True
    export_registrations: bool = False
    registration_ct: bool = True
    registration_mr: bool = True
    registration_pet: bool = True
    registration_cbct: bool = False

    # Anonymization settings
    anonymize: bool = False
    anonymization_key_path: str | None = None  # If None, <export_root>/AnonymizationKey.json
    anonymization_salt: str = "rtexport"

    # Logging settings
    log_level: str = "INFO"
    log_to_file: bool = False
    log_dir: str | None = None  # If None, will use {export_root}/logs
    log_rotation: str = "20 MB"
    log_retention: str = "1 week"
    log_format: str | None = None  # Use default if None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize the sources for settings.

        Priority order: init arguments, environment variables, then TOML config files
        """
        return init_settings, env_settings, TomlConfigSettingsSource(settings_cls)

    @property
    def remote_node(self) -> "DicomNode":
        """Remote archive as a DICOM node."""
        from .services.dicom.models import DicomNode

        return DicomNode(aet=self.remote_aet, host=self.remote_host, port=self.remote_port)

    def get_key_path(self) -> Path:
        """Get the anonymization key file path.

        Returns:
            Configured key path, or AnonymizationKey.json in the export root.
        """
        if self.anonymization_key_path:
            return Path(self.anonymization_key_path)
        return Path(self.export_root) / "AnonymizationKey.json"

    def get_log_dir(self) -> Path:
        """Get the log directory path.

        Returns:
            Path to the log directory. Uses log_dir if specified,
            otherwise creates logs directory in export_root.
        """
        if self.log_dir:
            return Path(self.log_dir)
        return Path(self.export_root) / "logs"

    def to_export_options(self) -> "ExportOptions":
        """Collect the per-data-type and per-modality toggles."""
        from .services.export.models import ExportOptions

        return ExportOptions(
            export_examination=self.export_examination,
            export_structure=self.export_structure,
            export_plan=self.export_plan,
            export_dose=self.export_dose,
            export_registrations=self.export_registrations,
            registration_ct=self.registration_ct,
            registration_mr=self.registration_mr,
            registration_pet=self.registration_pet,
            registration_cbct=self.registration_cbct,
        )


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance, with caching.

    Returns:
        Cached Settings instance
    """
    return Settings()


# Create a global settings instance for easy imports
settings = get_settings()
