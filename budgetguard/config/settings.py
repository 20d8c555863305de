"""Configuration management for BudgetGuard."""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for BudgetGuard.

    Budget policy (caps, rates, plans) lives in the budget config file named by
    budget_config_path; these settings cover storage and decision mechanics.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUDGETGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Storage settings
    database_path: str = Field(
        default="budgetguard.db",
        description="Path to SQLite ledger database"
    )
    budget_config_path: Optional[str] = Field(
        default=None,
        description="Path to budget policy YAML file (None = use packaged default)"
    )

    # Decision mechanics
    lease_timeout_seconds: float = Field(
        default=5.0,
        description="Seconds to wait for a month decision lease before LockBusy"
    )
    decision_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts for a decision on LockBusy / LedgerWriteConflict"
    )
    retry_backoff_seconds: float = Field(
        default=0.2,
        ge=0,
        description="Linear backoff between decision attempts"
    )
    decided_by: str = Field(
        default="selector",
        description="Decider identity recorded on committed plans"
    )

    # Forecast settings
    forecast_window: int = Field(
        default=7,
        ge=1,
        description="Number of recent committed estimates averaged for the forecast"
    )

    def __init__(self, **kwargs):
        """Initialize settings with environment variable support."""
        super().__init__(**kwargs)

        # Expand ~ in paths
        if self.database_path.startswith("~"):
            self.database_path = str(Path(self.database_path).expanduser())
        if self.budget_config_path and self.budget_config_path.startswith("~"):
            self.budget_config_path = str(Path(self.budget_config_path).expanduser())

    @classmethod
    def load_from_file(cls, config_file: str) -> "Settings":
        """Load settings from a YAML config file.

        Args:
            config_file: Path to YAML config file

        Returns:
            Settings instance
        """
        import yaml

        with open(config_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def get_database_path(self) -> Path:
        """Get the database path as a Path object.

        Returns:
            Path to database file
        """
        path = Path(self.database_path)
        # Create parent directory if it doesn't exist
        path.parent.mkdir(parents=True, exist_ok=True)
        return path
