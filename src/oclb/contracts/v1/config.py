from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_ASSISTANT_COMMAND = ["opencode", "serve", "--port", "{port}", "--hostname", "{host}"]


class FeishuConfig(BaseModel):
    app_id: str = ""
    app_secret: str = ""
    # Name of an environment variable that overrides app_secret when set.
    app_secret_env: str = ""
    domain: str = "https://open.feishu.cn"

    model_config = ConfigDict(extra="ignore")


class AssistantConfig(BaseModel):
    work_dir: str = ""
    host: str = "127.0.0.1"
    port: int = Field(default=4096, ge=1, le=65535)
    command: List[str] = Field(default_factory=lambda: list(DEFAULT_ASSISTANT_COMMAND))
    health_path: str = "/health"
    startup_timeout: float = Field(default=30.0, gt=0)
    health_interval: float = Field(default=5.0, gt=0)
    stop_grace: float = Field(default=5.0, ge=0)
    request_timeout: float = Field(default=600.0, gt=0)

    model_config = ConfigDict(extra="ignore")

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class BridgeTuning(BaseModel):
    queue_capacity: int = Field(default=100, ge=1)
    retry_limit: int = Field(default=3, ge=0)
    drain_interval: float = Field(default=5.0, gt=0)
    seen_capacity: int = Field(default=1000, ge=1)
    fingerprint_capacity: int = Field(default=200, ge=1)

    model_config = ConfigDict(extra="ignore")


class WebConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=3000, ge=1, le=65535)
    autostart: bool = False

    model_config = ConfigDict(extra="ignore")


class BridgeConfig(BaseModel):
    feishu: FeishuConfig = Field(default_factory=FeishuConfig)
    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    bridge: BridgeTuning = Field(default_factory=BridgeTuning)
    web: WebConfig = Field(default_factory=WebConfig)

    model_config = ConfigDict(extra="ignore")

    def masked(self) -> dict:
        """Dump with the app secret hidden (for status/config endpoints)."""
        data = self.model_dump()
        secret = str(data["feishu"].get("app_secret") or "")
        if secret:
            data["feishu"]["app_secret"] = secret[:2] + "***" if len(secret) > 4 else "***"
        return data


def missing_fields(cfg: Optional[BridgeConfig]) -> List[str]:
    """Required settings that are empty; [] when the config can start a bridge."""
    if cfg is None:
        return ["config"]
    out: List[str] = []
    if not cfg.feishu.app_id.strip():
        out.append("feishu.app_id")
    if not cfg.feishu.app_secret.strip():
        out.append("feishu.app_secret")
    if not cfg.assistant.work_dir.strip():
        out.append("assistant.work_dir")
    return out
