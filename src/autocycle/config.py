from __future__ import annotations

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_ROOT = "data"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    confirm_text: SecretStr = Field(
        default=SecretStr("AUTOCYCLE_EXECUTE_LIVE"), alias="AUTOCYCLE_CONFIRM_TEXT"
    )
    execute_active: bool = Field(default=False, alias="AUTOCYCLE_EXECUTE_ACTIVE")
    live_command: str = Field(default="", alias="AUTOCYCLE_LIVE_COMMAND")
    max_amount_raw: int = Field(default=10**18, alias="AUTOCYCLE_MAX_AMOUNT_RAW")
    execute_timeout_seconds: float = Field(
        default=120.0, alias="AUTOCYCLE_EXECUTE_TIMEOUT_SECONDS"
    )

    reconcile_snapshot_command: str = Field(
        default="", alias="AUTOCYCLE_RECONCILE_SNAPSHOT_COMMAND"
    )
    reconcile_before_command: str = Field(default="", alias="AUTOCYCLE_RECONCILE_BEFORE_COMMAND")
    reconcile_after_command: str = Field(default="", alias="AUTOCYCLE_RECONCILE_AFTER_COMMAND")
    reconcile_snapshot_timeout_seconds: float = Field(
        default=20.0, alias="AUTOCYCLE_RECONCILE_SNAPSHOT_TIMEOUT_SECONDS"
    )

    min_live_interval_seconds: int = Field(
        default=300, alias="AUTOCYCLE_MIN_LIVE_INTERVAL_SECONDS"
    )
    lock_ttl_seconds: int = Field(default=900, alias="AUTOCYCLE_LOCK_TTL_SECONDS")

    onchain_trigger_required: bool = Field(
        default=True, alias="AUTOCYCLE_ONCHAIN_TRIGGER_REQUIRED"
    )
    contract_entrypoint_enabled: bool = Field(
        default=True, alias="AUTOCYCLE_CONTRACT_ENTRYPOINT_ENABLED"
    )
    cycle_id: str = Field(default="", alias="AUTOCYCLE_CYCLE_ID")
    trigger_json: str = Field(default="", alias="AUTOCYCLE_TRIGGER_JSON")

    token_in: str = Field(default="USDC", alias="AUTOCYCLE_TOKEN_IN")
    token_out: str = Field(default="USDT", alias="AUTOCYCLE_TOKEN_OUT")
    amount_raw: str = Field(default="1000000000000000", alias="AUTOCYCLE_AMOUNT_RAW")
    router_address: str = Field(default="", alias="AUTOCYCLE_ROUTER_ADDRESS")
    executor_address: str = Field(default="", alias="AUTOCYCLE_EXECUTOR_ADDRESS")

    chain: str = Field(default="evm", alias="AUTOCYCLE_CHAIN")
    onchain_mode: bool = Field(default=False, alias="AUTOCYCLE_ONCHAIN_MODE")
    funding_route: str = Field(default="core_funding", alias="AUTOCYCLE_FUNDING_ROUTE")

    state_path: str = Field(
        default=f"{DEFAULT_DATA_ROOT}/autonomous-cycle-state.json", alias="AUTOCYCLE_STATE_PATH"
    )
    out_path: str = Field(
        default=f"{DEFAULT_DATA_ROOT}/proofs/autonomous-cycle/latest.json", alias="AUTOCYCLE_OUT"
    )
    history_dir: str = Field(
        default=f"{DEFAULT_DATA_ROOT}/proofs/autonomous-cycle/runs",
        alias="AUTOCYCLE_HISTORY_DIR",
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("confirm_text")
    def validate_confirm_text(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("AUTOCYCLE_CONFIRM_TEXT must not be empty")
        return value

    @field_validator("max_amount_raw", mode="before")
    def parse_max_amount_raw(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().replace("_", "")
        return value

    @field_validator("max_amount_raw")
    def validate_max_amount_raw(cls, value: int) -> int:
        if value < 0:
            raise ValueError("AUTOCYCLE_MAX_AMOUNT_RAW must be >= 0")
        return value

    @field_validator("execute_timeout_seconds")
    def validate_execute_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("AUTOCYCLE_EXECUTE_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("reconcile_snapshot_timeout_seconds")
    def validate_snapshot_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("AUTOCYCLE_RECONCILE_SNAPSHOT_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("min_live_interval_seconds")
    def validate_min_live_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("AUTOCYCLE_MIN_LIVE_INTERVAL_SECONDS must be > 0")
        return value

    @field_validator("lock_ttl_seconds")
    def validate_lock_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("AUTOCYCLE_LOCK_TTL_SECONDS must be > 0")
        return value

    @field_validator("funding_route")
    def normalize_funding_route(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if not cleaned:
            raise ValueError("AUTOCYCLE_FUNDING_ROUTE must not be empty")
        return cleaned

    def expected_confirm_text(self) -> str:
        return self.confirm_text.get_secret_value()

    def snapshot_before_source(self) -> str:
        return self.reconcile_before_command or self.reconcile_snapshot_command

    def snapshot_after_source(self) -> str:
        return self.reconcile_after_command or self.reconcile_snapshot_command

    def requires_trigger_hold(self, *, transition_verifiable: bool) -> bool:
        return (
            self.onchain_trigger_required
            and not transition_verifiable
            and not self.contract_entrypoint_enabled
        )
