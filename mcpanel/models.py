from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STOPPING = "stopping"
    RESTARTING = "restarting"


class ContainerStatus(str, Enum):
    NOT_FOUND = "not_found"
    CREATED = "created"
    RUNNING = "running"
    STARTING = "starting"
    STOPPED = "stopped"
    ERROR = "error"


class PlayerSample(CamelModel):
    name: str
    id: Optional[str] = None


class Players(CamelModel):
    online: int
    max: int
    sample: list[PlayerSample] = Field(default_factory=list)


class ServerConfig(CamelModel):
    mc_version: str = "unknown"
    server_type: str = "unknown"
    forge_version: str = ""


class ServerStatus(CamelModel):
    running: bool
    status: ContainerStatus
    server_ready: bool = False
    started_at: Optional[str] = None
    uptime_seconds: Optional[int] = None
    health: str = "unknown"
    config: Optional[ServerConfig] = None
    players: Optional[Players] = None
    action_state: ActionState = ActionState.IDLE
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_readiness_invariant(self) -> "ServerStatus":
        if self.status is ContainerStatus.RUNNING and not (self.running and self.server_ready):
            raise ValueError("status 'running' requires a running, ready server")
        if self.status is ContainerStatus.STARTING and not (self.running and not self.server_ready):
            raise ValueError("status 'starting' requires a running server that is not ready")
        return self


class ServerActionResponse(CamelModel):
    message: str
    status: str


class CommandRequest(CamelModel):
    command: str = Field(..., min_length=1)


class CommandResponse(CamelModel):
    message: str
    response: str


class KickRequest(CamelModel):
    player_name: str = Field(..., min_length=1, max_length=32)
    reason: str = Field("Kicked by admin", max_length=128)


class KickResponse(CamelModel):
    message: str


class VersionChangeRequest(CamelModel):
    version: str = Field(..., min_length=1, max_length=32)
    server_type: str = Field("forge", min_length=1, max_length=32)
    forge_version: Optional[str] = Field(None, max_length=64)


class VersionChangeResponse(CamelModel):
    message: str
    version: str
    server_type: str
    status: str = "recreating"


class ResetRequest(CamelModel):
    delete_world: bool = False
    delete_mods: bool = False
    delete_config: bool = False


class ResetResponse(CamelModel):
    message: str
    deleted: list[str]
    note: str


class LogsResponse(CamelModel):
    lines: list[str]


class ServerPropertiesResponse(CamelModel):
    properties: Dict[str, str]


class ServerPropertiesUpdate(CamelModel):
    properties: Dict[str, Union[bool, int, float, str]]

    @field_validator("properties")
    @classmethod
    def _single_line_entries(cls, value: Dict[str, Union[bool, int, float, str]]):
        for key, item in value.items():
            if not key.strip() or "=" in key or any(c in key for c in "\r\n#"):
                raise ValueError(f"Invalid property name: {key!r}")
            if isinstance(item, str) and ("\n" in item or "\r" in item):
                raise ValueError(f"Property {key} must be a single line")
        return value


class ServerPropertiesContent(CamelModel):
    content: str = Field(..., min_length=1)


class MessageResponse(CamelModel):
    message: str


class BackupResponse(CamelModel):
    message: str
    output: str
    exit_code: int
